"""Lifecycle schema: budgets, lifecycle entities, links and transition records

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01
"""

from __future__ import annotations

from typing import Iterable, Sequence, Union

from alembic import op
from sqlalchemy.engine import Connection

from procurement_core.db import _convert_qmark_to_pg, create_schema


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


class _AlembicDbAdapter:
    def __init__(self, connection: Connection, backend: str):
        self._connection = connection
        self.backend = backend

    def execute(self, sql: str, params: Iterable | None = None):
        if params is None:
            return self._connection.exec_driver_sql(sql)
        statement = _convert_qmark_to_pg(sql) if self.backend == "postgres" else sql
        return self._connection.exec_driver_sql(statement, tuple(params))

    def commit(self):
        # Alembic owns the transaction for the migration.
        return None


def _resolve_backend(connection: Connection) -> str:
    dialect = (connection.dialect.name or "").lower()
    if dialect.startswith("postgres"):
        return "postgres"
    return "sqlite"


def upgrade() -> None:
    connection = op.get_bind()
    create_schema(_AlembicDbAdapter(connection, _resolve_backend(connection)))


def downgrade() -> None:
    for index in (
        "ix_transition_records_entity_attempt",
        "ix_entity_links_target",
        "ix_lifecycle_entities_type_status",
    ):
        op.execute(f"DROP INDEX IF EXISTS {index}")
    for table in ("transition_records", "entity_links", "lifecycle_entities", "budgets"):
        op.execute(f"DROP TABLE IF EXISTS {table}")
