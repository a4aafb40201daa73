"""
SQLite foundation - connection handling and schema for the document store.
"""

import sqlite3
from contextlib import contextmanager
from typing import Generator
from .config import DB_PATH, STORE_TIMEOUT_SEC, ensure_db_directory


def connect(db_path: str = None) -> sqlite3.Connection:
    """Open an autocommit connection; transactions are issued explicitly."""
    conn = sqlite3.connect(db_path or DB_PATH, timeout=STORE_TIMEOUT_SEC, isolation_level=None)
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def get_db(db_path: str = None) -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite database connection."""
    conn = connect(db_path)
    try:
        yield conn
    finally:
        conn.close()


def init_db(db_path: str = None):
    """Initialize the database with required tables."""
    ensure_db_directory(db_path)
    with get_db(db_path) as conn:
        cursor = conn.cursor()

        cursor.execute("PRAGMA journal_mode=WAL")

        # Every collection lives in one table; documents are JSON bodies
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS documents (
                collection TEXT NOT NULL,
                id TEXT NOT NULL,
                body TEXT NOT NULL,
                inserted_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (collection, id)
            )
        ''')

        cursor.execute('CREATE INDEX IF NOT EXISTS idx_documents_collection ON documents(collection)')


def health_check(db_path: str = None):
    """Check database health."""
    try:
        with get_db(db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table';")
            table_names = [row[0] for row in cursor.fetchall()]
            return 'documents' in table_names
    except sqlite3.Error:
        return False
