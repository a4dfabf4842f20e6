import os
import sqlite3
import unittest

from quote_compare import create_app
from quote_compare.config import Config
from quote_compare.db import SCHEMA_TABLES, close_db
from quote_compare.db_migrations import to_sqlalchemy_url
from tests.helpers.temp_db import TempDbSandbox


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
        self._temp_db = TempDbSandbox(prefix="migrations")
        self.db_path = self._temp_db.db_path
        self._prev_env = os.environ.get("FLASK_ENV")
        os.environ["FLASK_ENV"] = "development"

    def tearDown(self) -> None:
        if self._prev_env is None:
            os.environ.pop("FLASK_ENV", None)
        else:
            os.environ["FLASK_ENV"] = self._prev_env
        self._temp_db.cleanup()

    def _build_app(self, *, testing: bool, db_auto_init: bool):
        return create_app(
            self._temp_db.make_config(Config, TESTING=testing, DB_AUTO_INIT=db_auto_init, LOG_JSON=False)
        )

    def test_schema_not_created_by_default(self) -> None:
        app = self._build_app(testing=False, db_auto_init=False)
        with app.app_context():
            close_db()

        self.assertFalse(_table_exists(self.db_path, "inquiries"))

    def test_schema_created_with_explicit_dev_flag(self) -> None:
        app = self._build_app(testing=False, db_auto_init=True)
        with app.app_context():
            close_db()

        for table in SCHEMA_TABLES:
            with self.subTest(table=table):
                self.assertTrue(_table_exists(self.db_path, table))

    def test_auto_init_is_ignored_outside_development(self) -> None:
        os.environ["FLASK_ENV"] = "staging"
        app = self._build_app(testing=False, db_auto_init=True)
        with app.app_context():
            close_db()

        self.assertFalse(_table_exists(self.db_path, "inquiries"))

    def test_flask_db_upgrade_and_downgrade(self) -> None:
        app = self._build_app(testing=False, db_auto_init=False)
        runner = app.test_cli_runner()

        upgrade_result = runner.invoke(args=["db", "upgrade"])
        self.assertEqual(upgrade_result.exit_code, 0, msg=upgrade_result.output)
        self.assertTrue(_table_exists(self.db_path, "inquiries"))
        self.assertTrue(_table_exists(self.db_path, "item_reference_changes"))

        downgrade_result = runner.invoke(args=["db", "downgrade", "base"])
        self.assertEqual(downgrade_result.exit_code, 0, msg=downgrade_result.output)
        self.assertFalse(_table_exists(self.db_path, "inquiries"))

        reupgrade_result = runner.invoke(args=["db", "upgrade"])
        self.assertEqual(reupgrade_result.exit_code, 0, msg=reupgrade_result.output)
        self.assertTrue(_table_exists(self.db_path, "inquiries"))

    def test_seed_demo_command(self) -> None:
        app = self._build_app(testing=True, db_auto_init=False)
        runner = app.test_cli_runner()

        result = runner.invoke(args=["db", "seed-demo"])
        self.assertEqual(result.exit_code, 0, msg=result.output)

        conn = sqlite3.connect(self.db_path)
        try:
            self.assertEqual(conn.execute("SELECT COUNT(*) FROM inquiries").fetchone()[0], 1)
            self.assertEqual(conn.execute("SELECT COUNT(*) FROM supplier_responses").fetchone()[0], 5)
        finally:
            conn.close()

        summary = app.test_client().get("/api/inquiries/1/responses/summary")
        self.assertEqual(summary.status_code, 200)
        self.assertTrue(summary.get_json()["summaries"])


class SqlalchemyUrlTest(unittest.TestCase):
    def test_maps_paths_and_dsns(self) -> None:
        self.assertEqual(to_sqlalchemy_url("postgres://u:p@h/db"), "postgresql://u:p@h/db")
        self.assertEqual(to_sqlalchemy_url("postgresql://u:p@h/db"), "postgresql://u:p@h/db")
        self.assertTrue(to_sqlalchemy_url("/tmp/x.db").startswith("sqlite:///"))
        with self.assertRaises(RuntimeError):
            to_sqlalchemy_url("  ")


if __name__ == "__main__":
    unittest.main()
