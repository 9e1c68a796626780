import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from decimal import Decimal
from typing import Iterator, Optional

from circdesk.config import settings

logger = logging.getLogger(__name__)

# Default database file.
# Priority:
# 1) LIBRARY_DB_FILE (explicit override, read at import time)
# 2) settings.database_file
DATABASE_FILE = os.environ.get("LIBRARY_DB_FILE") or settings.database_file

# Money goes in as its exact string form; NUMERIC affinity keeps it summable.
sqlite3.register_adapter(Decimal, str)

STATISTICS_RANGES = [
    {"start": start, "end": start + 99, "label": f"{start:03d}-{start + 99:03d}"}
    for start in range(0, 1000, 100)
]

# (key, value, type, group, description)
DEFAULT_LIBRARY_SETTINGS = [
    ("library_name", "Library", "string", "general", "Name of the library displayed across the system"),
    ("default_loan_days", "7", "integer", "circulation", "Number of days for student book loans"),
    ("max_loans_per_student", "3", "integer", "circulation", "Maximum number of books a student can borrow at once"),
    ("fine_per_day", "5", "decimal", "circulation", "Fine amount per day for overdue student books"),
    ("faculty_loan_days", "14", "integer", "circulation", "Number of days for faculty book loans"),
    ("max_loans_per_faculty", "5", "integer", "circulation", "Maximum number of books a faculty member can borrow at once"),
    ("faculty_fine_per_day", "0", "decimal", "circulation", "Fine amount per day for overdue faculty books"),
    ("lost_book_default_fee", "500", "decimal", "circulation", "Replacement fee when a lost book's title has no price"),
    ("statistics_ranges", json.dumps(STATISTICS_RANGES), "json", "general", "Call number ranges for statistics reports"),
]


def _resolve(db_file: Optional[str]) -> str:
    return db_file or DATABASE_FILE


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database.

    Connections run in autocommit mode; callers that write open an explicit
    transaction with :func:`transaction`.
    """
    conn = sqlite3.connect(
        _resolve(db_file),
        timeout=settings.database_timeout,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


@contextmanager
def transaction(db_file: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    """Run the enclosed block as one atomic unit.

    ``BEGIN IMMEDIATE`` takes the write lock before the first read, so a
    check-then-act sequence inside the block cannot interleave with another
    writer. Any exception rolls the whole unit back.
    """
    conn = get_db_connection(db_file)
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    finally:
        conn.close()


@contextmanager
def read_connection(db_file: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    conn = get_db_connection(db_file)
    try:
        yield conn
    finally:
        conn.close()


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the required tables if they do not exist yet."""
    conn = get_db_connection(db_file)
    try:
        cursor = conn.cursor()
        cursor.execute("BEGIN")
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS patrons (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                patron_code TEXT NOT NULL UNIQUE,
                name TEXT NOT NULL,
                email TEXT,
                patron_class TEXT NOT NULL CHECK(patron_class IN ('student', 'faculty')),
                status TEXT NOT NULL DEFAULT 'active' CHECK(status IN ('active', 'inactive')),
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                deleted_at TEXT
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS titles (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                isbn TEXT,
                call_number TEXT,
                category TEXT,
                price NUMERIC NOT NULL DEFAULT 0 CHECK(price >= 0),
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                deleted_at TEXT
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS assets (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title_id INTEGER NOT NULL,
                asset_code TEXT NOT NULL UNIQUE,
                building TEXT,
                aisle TEXT,
                shelf TEXT,
                status TEXT NOT NULL DEFAULT 'available'
                    CHECK(status IN ('available', 'borrowed', 'damaged', 'lost')),
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                deleted_at TEXT,
                FOREIGN KEY (title_id) REFERENCES titles(id)
            )
        """)

        # One table for both patron classes; patron_class selects the policy.
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS loans (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                patron_id INTEGER NOT NULL,
                patron_class TEXT NOT NULL CHECK(patron_class IN ('student', 'faculty')),
                asset_id INTEGER NOT NULL,
                borrowed_at TEXT NOT NULL,
                due_date TEXT NOT NULL,
                returned_at TEXT,
                penalty_amount NUMERIC NOT NULL DEFAULT 0 CHECK(penalty_amount >= 0),
                payment_status TEXT CHECK(payment_status IN ('pending', 'paid', 'waived')),
                payment_date TEXT,
                processed_by TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (patron_id) REFERENCES patrons(id),
                FOREIGN KEY (asset_id) REFERENCES assets(id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS library_settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                type TEXT NOT NULL DEFAULT 'string',
                "group" TEXT NOT NULL DEFAULT 'general',
                description TEXT,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS monthly_statistics (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                year INTEGER NOT NULL,
                month INTEGER NOT NULL CHECK(month >= 1 AND month <= 12),
                range_start INTEGER NOT NULL,
                range_end INTEGER NOT NULL,
                user_type TEXT NOT NULL DEFAULT 'student',
                count INTEGER NOT NULL DEFAULT 0,
                UNIQUE (year, month, range_start, user_type)
            )
        """)

        # Columns added after the first schema revision
        cursor.execute("PRAGMA table_info(loans)")
        columns = [column[1] for column in cursor.fetchall()]
        if "remarks" not in columns:
            cursor.execute("ALTER TABLE loans ADD COLUMN remarks TEXT")

        # At most one open loan per asset, whatever the patron class.
        cursor.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS ux_loans_open_asset ON loans(asset_id) WHERE returned_at IS NULL"
        )
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_patron ON loans(patron_id, returned_at)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_payment ON loans(patron_id, payment_status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_due_date ON loans(due_date)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_assets_title ON assets(title_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_assets_status ON assets(status)")

        for key, value, value_type, group, description in DEFAULT_LIBRARY_SETTINGS:
            cursor.execute(
                'INSERT OR IGNORE INTO library_settings (key, value, type, "group", description) VALUES (?, ?, ?, ?, ?)',
                (key, value, value_type, group, description),
            )
        cursor.execute("COMMIT")
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Initialize the database, creating tables and seeding settings as needed."""
    create_tables(db_file)
    logger.debug(f"Database ready at {_resolve(db_file)}")
