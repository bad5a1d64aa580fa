import contextlib
import sqlite3
from typing import Iterable, List

try:
    import psycopg2
    import psycopg2.extras
except ImportError:  # pragma: no cover - optional dependency for postgres
    psycopg2 = None

from flask import current_app, g


class Database:
    def __init__(self, backend: str, connection):
        self.backend = backend
        self._conn = connection

    def execute(self, sql: str, params: Iterable | None = None):
        if self.backend == "postgres":
            cursor = self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            if params:
                sql = _convert_qmark_to_pg(sql)
                cursor.execute(sql, list(params))
            else:
                cursor.execute(sql)
            return cursor
        return self._conn.execute(sql, params or ())

    @contextlib.contextmanager
    def transaction(self):
        """All-or-nothing unit of work; rolls back every statement on error."""
        if self.backend == "postgres":
            self._conn.autocommit = False
        elif not self._conn.in_transaction:
            # Take the write lock up front so version checks and writes see the same snapshot.
            self._conn.execute("BEGIN IMMEDIATE")
        try:
            yield self
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise
        finally:
            if self.backend == "postgres":
                self._conn.autocommit = True

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


def _convert_qmark_to_pg(sql: str) -> str:
    return sql.replace("?", "%s")


def connect_database(db_path: str) -> Database:
    if db_path.lower().startswith("postgres"):
        if psycopg2 is None:
            raise RuntimeError("psycopg2 is not installed.")
        conn = psycopg2.connect(db_path)
        conn.autocommit = True
        return Database("postgres", conn)

    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.row_factory = sqlite3.Row
    return Database("sqlite", conn)


def get_db():
    if "db" not in g:
        db_path = current_app.config["DB_PATH"]
        g.db = connect_database(db_path)
    return g.db


def close_db(_error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


SCHEMA_STATEMENTS: List[str] = [
    """
    CREATE TABLE IF NOT EXISTS budgets (
        id TEXT PRIMARY KEY,
        org_unit_id TEXT,
        fiscal_year TEXT NOT NULL,
        total_amount TEXT NOT NULL,
        available_amount TEXT NOT NULL,
        currency TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'ACTIVE' CHECK (
            status IN ('ACTIVE','DEPLETED','EXPIRED','SUSPENDED')
        ),
        version INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS lifecycle_entities (
        id TEXT PRIMARY KEY,
        entity_type TEXT NOT NULL,
        status TEXT NOT NULL,
        amount TEXT NOT NULL,
        currency TEXT NOT NULL,
        owner_org_unit_id TEXT,
        budget_id TEXT,
        attributes TEXT NOT NULL DEFAULT '{}',
        version INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_lifecycle_entities_type_status
    ON lifecycle_entities (entity_type, status)
    """,
    """
    CREATE TABLE IF NOT EXISTS entity_links (
        entity_id TEXT NOT NULL,
        position INTEGER NOT NULL,
        target_type TEXT NOT NULL,
        target_id TEXT NOT NULL,
        PRIMARY KEY (entity_id, position)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_entity_links_target
    ON entity_links (target_id, target_type)
    """,
    """
    CREATE TABLE IF NOT EXISTS transition_records (
        id TEXT PRIMARY KEY,
        entity_id TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        transition TEXT NOT NULL,
        from_status TEXT NOT NULL,
        to_status TEXT NOT NULL,
        actor_id TEXT NOT NULL,
        actor_role TEXT NOT NULL,
        attempt_id TEXT NOT NULL,
        budget_id TEXT,
        budget_delta TEXT NOT NULL DEFAULT '0',
        result_snapshot TEXT NOT NULL DEFAULT '{}',
        occurred_at TEXT NOT NULL,
        CONSTRAINT uq_transition_records_attempt UNIQUE (entity_id, from_status, to_status, attempt_id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_transition_records_entity_attempt
    ON transition_records (entity_id, attempt_id)
    """,
]


def init_db():
    create_schema(get_db())


def create_schema(db: Database) -> None:
    for statement in SCHEMA_STATEMENTS:
        db.execute(statement)
    db.commit()
