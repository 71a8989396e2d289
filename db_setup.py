import sqlite3
from contextlib import contextmanager

from config import get_settings


def init_db(db_name=None):
    conn = get_db_connection(db_name)
    cursor = conn.cursor()

    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS Contact (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            phoneNumber TEXT,
            email TEXT,
            linkedId INTEGER,
            linkPrecedence TEXT NOT NULL CHECK(linkPrecedence IN ('secondary', 'primary')),
            createdAt DATETIME NOT NULL,
            updatedAt DATETIME NOT NULL,
            deletedAt DATETIME,
            FOREIGN KEY (linkedId) REFERENCES Contact (id)
        )
    ''')
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_contact_email ON Contact (email)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_contact_phone ON Contact (phoneNumber)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_contact_linked ON Contact (linkedId)")

    # every read goes through this view so soft-deleted rows never leak into a cluster
    cursor.execute('''
        CREATE VIEW IF NOT EXISTS LiveContact AS
        SELECT * FROM Contact WHERE deletedAt IS NULL
    ''')

    conn.close()


def get_db_connection(db_name=None, timeout=None):
    settings = get_settings()
    conn = sqlite3.connect(
        db_name or settings.db_path,
        timeout=timeout if timeout is not None else settings.db_timeout_seconds,
        isolation_level=None,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def transaction(db_name=None, timeout=None):
    """
    Open a connection and hold the store's write lock for the whole block.

    BEGIN IMMEDIATE makes concurrent identify calls queue on the database
    instead of interleaving their reads and writes. The block commits on
    normal exit and rolls back on any exception, cancellation included.
    """
    conn = get_db_connection(db_name, timeout)
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.rollback()
            raise
        else:
            conn.commit()
    finally:
        conn.close()
