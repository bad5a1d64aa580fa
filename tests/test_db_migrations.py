import json
import os
import shutil
import sqlite3
import tempfile
import unittest
import uuid

from procurement_core import create_app
from procurement_core.config import Config
from procurement_core.db import close_db, connect_database
from procurement_core.infrastructure.sql_entity_store import SqlEntityStore
from tests.helpers.lifecycle_fixtures import make_entity


def _table_exists(db_path: str, table_name: str) -> bool:
    conn = sqlite3.connect(db_path)
    try:
        row = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name = ?",
            (table_name,),
        ).fetchone()
        return row is not None
    finally:
        conn.close()


class DbMigrationsTest(unittest.TestCase):
    def setUp(self) -> None:
        base_tmp = tempfile.gettempdir()
        self._tmpdir_path = os.path.join(base_tmp, f"pc_migrations_test_{uuid.uuid4().hex}")
        os.makedirs(self._tmpdir_path, exist_ok=True)
        self.db_path = os.path.join(self._tmpdir_path, "procurement_core_test.db")
        self._prev_env = os.environ.get("FLASK_ENV")
        os.environ["FLASK_ENV"] = "development"

    def tearDown(self) -> None:
        if self._prev_env is None:
            os.environ.pop("FLASK_ENV", None)
        else:
            os.environ["FLASK_ENV"] = self._prev_env
        shutil.rmtree(self._tmpdir_path, ignore_errors=True)

    def _build_app(self, *, testing: bool, db_auto_init: bool):
        db_path = self.db_path

        class TempConfig(Config):
            DATABASE_DIR = self._tmpdir_path
            DB_PATH = db_path
            TESTING = testing
            DB_AUTO_INIT = db_auto_init
            OVERDUE_SWEEP_ENABLED = False
            LOG_JSON = False

        app = create_app(TempConfig)
        return app

    def test_schema_not_created_by_default(self) -> None:
        app = self._build_app(testing=False, db_auto_init=False)
        with app.app_context():
            close_db()

        self.assertFalse(_table_exists(self.db_path, "lifecycle_entities"))

    def test_schema_created_with_explicit_dev_flag(self) -> None:
        app = self._build_app(testing=False, db_auto_init=True)
        with app.app_context():
            close_db()

        self.assertTrue(_table_exists(self.db_path, "lifecycle_entities"))
        self.assertTrue(_table_exists(self.db_path, "transition_records"))

    def test_flask_db_upgrade_and_downgrade(self) -> None:
        app = self._build_app(testing=False, db_auto_init=False)
        runner = app.test_cli_runner()

        upgrade_result = runner.invoke(args=["db", "upgrade"])
        self.assertEqual(upgrade_result.exit_code, 0, msg=upgrade_result.output)
        for table in ("budgets", "lifecycle_entities", "entity_links", "transition_records"):
            self.assertTrue(_table_exists(self.db_path, table), table)

        downgrade_result = runner.invoke(args=["db", "downgrade", "base"])
        self.assertEqual(downgrade_result.exit_code, 0, msg=downgrade_result.output)
        self.assertFalse(_table_exists(self.db_path, "lifecycle_entities"))
        self.assertFalse(_table_exists(self.db_path, "budgets"))

        reupgrade_result = runner.invoke(args=["db", "upgrade"])
        self.assertEqual(reupgrade_result.exit_code, 0, msg=reupgrade_result.output)
        self.assertTrue(_table_exists(self.db_path, "lifecycle_entities"))

    def test_sweep_overdue_cli(self) -> None:
        app = self._build_app(testing=False, db_auto_init=False)
        runner = app.test_cli_runner()
        upgrade_result = runner.invoke(args=["db", "upgrade"])
        self.assertEqual(upgrade_result.exit_code, 0, msg=upgrade_result.output)

        db = connect_database(self.db_path)
        try:
            store = SqlEntityStore(db)
            late = make_entity(store, "Invoice", status="APPROVED", attributes={"due_date": "2026-01-31"})
            make_entity(store, "Invoice", status="APPROVED", attributes={"due_date": "2026-12-31"})
        finally:
            db.close()

        result = runner.invoke(args=["lifecycle", "sweep-overdue", "--date", "2026-02-15"])
        self.assertEqual(result.exit_code, 0, msg=result.output)
        summary = json.loads(next(line for line in reversed(result.output.splitlines()) if line.startswith("{")))
        self.assertEqual(summary["marked_overdue"], 1)
        self.assertEqual(summary["skipped"], 1)

        db = connect_database(self.db_path)
        try:
            self.assertEqual(SqlEntityStore(db).get(late.id).status, "OVERDUE")
        finally:
            db.close()

        bad_date = runner.invoke(args=["lifecycle", "sweep-overdue", "--date", "15/02/2026"])
        self.assertNotEqual(bad_date.exit_code, 0)

    def test_status_registry_cli(self) -> None:
        app = self._build_app(testing=True, db_auto_init=False)
        result = app.test_cli_runner().invoke(args=["lifecycle", "status-registry"])

        self.assertEqual(result.exit_code, 0, msg=result.output)
        bundle = json.loads(result.output[result.output.index("{") :])
        self.assertEqual(bundle["Payment"]["initial"], "REQUESTED")


if __name__ == "__main__":
    unittest.main()
