import contextlib
import sqlite3
from typing import Iterable

try:
    import psycopg2
    import psycopg2.extras
except ImportError:  # pragma: no cover - optional dependency for postgres
    psycopg2 = None

from flask import current_app, g


if psycopg2 is not None:
    DB_ERRORS = (sqlite3.Error, psycopg2.Error)
else:  # pragma: no cover - optional dependency for postgres
    DB_ERRORS = (sqlite3.Error,)


SCHEMA_TABLES = [
    "order_items",
    "orders",
    "item_reference_changes",
    "promotion_items",
    "promotions",
    "supplier_responses",
    "inquiry_items",
    "inquiries",
    "items",
    "suppliers",
]


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
    def read_snapshot(self):
        """Run every read of one fetch inside a single read-only transaction."""
        if self.backend == "postgres":
            self.execute("BEGIN TRANSACTION ISOLATION LEVEL REPEATABLE READ READ ONLY")
            try:
                yield self
            finally:
                self.execute("COMMIT")
            return

        if self._conn.in_transaction:
            yield self
            return
        self._conn.execute("BEGIN")
        try:
            yield self
        finally:
            self._conn.commit()

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


def _convert_qmark_to_pg(sql: str) -> str:
    return sql.replace("?", "%s")


def _connect_database(db_path: str) -> Database:
    if db_path.lower().startswith("postgres"):
        if psycopg2 is None:
            raise RuntimeError("psycopg2 is not installed.")
        conn = psycopg2.connect(db_path)
        conn.autocommit = True
        return Database("postgres", conn)

    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return Database("sqlite", conn)


def get_db():
    if "db" not in g:
        db_path = current_app.config["DB_PATH"]
        g.db = _connect_database(db_path)
    return g.db


def get_read_db():
    if "db_read" not in g:
        db_path = current_app.config.get("DATABASE_READ_URL") or current_app.config["DB_PATH"]
        g.db_read = _connect_database(db_path)
    return g.db_read


def close_db(_error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()
    db_read = g.pop("db_read", None)
    if db_read is not None:
        db_read.close()


def init_db():
    db = get_db()
    if db.backend == "postgres":
        _init_db_postgres(db)
        return

    _init_db_sqlite(db)
    db.commit()


def _init_db_sqlite(db: Database):
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS suppliers (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            email TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS items (
            item_id TEXT PRIMARY KEY,
            hebrew_description TEXT,
            english_description TEXT,
            stock_qty REAL NOT NULL DEFAULT 0,
            sold_this_year REAL NOT NULL DEFAULT 0,
            retail_price REAL,
            import_markup REAL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS inquiries (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            title TEXT,
            status TEXT NOT NULL DEFAULT 'open' CHECK (
                status IN ('open','ordered','closed')
            ),
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS inquiry_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            inquiry_id INTEGER NOT NULL,
            item_id TEXT NOT NULL,
            requested_qty REAL NOT NULL DEFAULT 0,
            excel_row_index INTEGER NOT NULL DEFAULT 0,
            retail_price REAL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS supplier_responses (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            inquiry_id INTEGER NOT NULL,
            supplier_id INTEGER NOT NULL,
            item_id TEXT NOT NULL,
            price_quoted REAL,
            response_date TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            is_promotion INTEGER NOT NULL DEFAULT 0,
            promotion_id TEXT,
            promotion_name TEXT,
            notes TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS promotions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            supplier_id INTEGER NOT NULL,
            name TEXT,
            start_date TEXT,
            end_date TEXT,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS promotion_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            promotion_id INTEGER NOT NULL,
            item_id TEXT NOT NULL,
            promotion_price REAL NOT NULL
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS item_reference_changes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            original_item_id TEXT NOT NULL,
            new_reference_id TEXT NOT NULL,
            change_date TEXT NOT NULL,
            source TEXT NOT NULL DEFAULT 'user' CHECK (
                source IN ('supplier','user','inquiry_item')
            ),
            supplier_id INTEGER,
            notes TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS orders (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            inquiry_id INTEGER NOT NULL,
            supplier_id INTEGER NOT NULL,
            status TEXT NOT NULL DEFAULT 'draft' CHECK (
                status IN ('draft','sent','cancelled')
            ),
            total_value REAL NOT NULL DEFAULT 0,
            session_id TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS order_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            order_id INTEGER NOT NULL,
            item_id TEXT NOT NULL,
            inquiry_item_id INTEGER,
            quantity REAL NOT NULL,
            unit_price REAL NOT NULL,
            group_key TEXT NOT NULL,
            promotion_id TEXT
        )
        """
    )

    _create_indexes(db)


def _init_db_postgres(db: Database) -> None:
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS suppliers (
            id SERIAL PRIMARY KEY,
            name TEXT NOT NULL,
            email TEXT,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS items (
            item_id TEXT PRIMARY KEY,
            hebrew_description TEXT,
            english_description TEXT,
            stock_qty DOUBLE PRECISION NOT NULL DEFAULT 0,
            sold_this_year DOUBLE PRECISION NOT NULL DEFAULT 0,
            retail_price DOUBLE PRECISION,
            import_markup DOUBLE PRECISION,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS inquiries (
            id SERIAL PRIMARY KEY,
            title TEXT,
            status TEXT NOT NULL DEFAULT 'open' CHECK (
                status IN ('open','ordered','closed')
            ),
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS inquiry_items (
            id SERIAL PRIMARY KEY,
            inquiry_id INTEGER NOT NULL REFERENCES inquiries(id) ON DELETE CASCADE,
            item_id TEXT NOT NULL,
            requested_qty DOUBLE PRECISION NOT NULL DEFAULT 0,
            excel_row_index INTEGER NOT NULL DEFAULT 0,
            retail_price DOUBLE PRECISION,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS supplier_responses (
            id SERIAL PRIMARY KEY,
            inquiry_id INTEGER NOT NULL REFERENCES inquiries(id) ON DELETE CASCADE,
            supplier_id INTEGER NOT NULL REFERENCES suppliers(id),
            item_id TEXT NOT NULL,
            price_quoted DOUBLE PRECISION,
            response_date DATE NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            is_promotion BOOLEAN NOT NULL DEFAULT FALSE,
            promotion_id TEXT,
            promotion_name TEXT,
            notes TEXT,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS promotions (
            id SERIAL PRIMARY KEY,
            supplier_id INTEGER NOT NULL REFERENCES suppliers(id),
            name TEXT,
            start_date DATE,
            end_date DATE,
            is_active BOOLEAN NOT NULL DEFAULT TRUE,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS promotion_items (
            id SERIAL PRIMARY KEY,
            promotion_id INTEGER NOT NULL REFERENCES promotions(id) ON DELETE CASCADE,
            item_id TEXT NOT NULL,
            promotion_price DOUBLE PRECISION NOT NULL
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS item_reference_changes (
            id SERIAL PRIMARY KEY,
            original_item_id TEXT NOT NULL,
            new_reference_id TEXT NOT NULL,
            change_date DATE NOT NULL,
            source TEXT NOT NULL DEFAULT 'user' CHECK (
                source IN ('supplier','user','inquiry_item')
            ),
            supplier_id INTEGER,
            notes TEXT,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS orders (
            id SERIAL PRIMARY KEY,
            inquiry_id INTEGER NOT NULL REFERENCES inquiries(id),
            supplier_id INTEGER NOT NULL REFERENCES suppliers(id),
            status TEXT NOT NULL DEFAULT 'draft' CHECK (
                status IN ('draft','sent','cancelled')
            ),
            total_value DOUBLE PRECISION NOT NULL DEFAULT 0,
            session_id TEXT,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS order_items (
            id SERIAL PRIMARY KEY,
            order_id INTEGER NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
            item_id TEXT NOT NULL,
            inquiry_item_id INTEGER,
            quantity DOUBLE PRECISION NOT NULL,
            unit_price DOUBLE PRECISION NOT NULL,
            group_key TEXT NOT NULL,
            promotion_id TEXT
        )
        """
    )

    _create_indexes(db)


def _create_indexes(db: Database) -> None:
    db.execute("CREATE INDEX IF NOT EXISTS idx_inquiry_items_inquiry ON inquiry_items (inquiry_id, excel_row_index)")
    db.execute(
        "CREATE INDEX IF NOT EXISTS idx_supplier_responses_inquiry ON supplier_responses (inquiry_id, supplier_id, response_date)"
    )
    db.execute("CREATE INDEX IF NOT EXISTS idx_promotion_items_item ON promotion_items (item_id)")
    db.execute("CREATE INDEX IF NOT EXISTS idx_reference_changes_original ON item_reference_changes (original_item_id, change_date)")
    db.execute("CREATE INDEX IF NOT EXISTS idx_reference_changes_new ON item_reference_changes (new_reference_id)")
    db.execute("CREATE INDEX IF NOT EXISTS idx_order_items_order ON order_items (order_id)")


def _table_exists(db: Database, table: str) -> bool:
    if db.backend == "postgres":
        row = db.execute(
            """
            SELECT 1
            FROM information_schema.tables
            WHERE table_schema = 'public' AND table_name = ?
            """,
            (table,),
        ).fetchone()
        return row is not None

    row = db.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name = ?",
        (table,),
    ).fetchone()
    return row is not None
