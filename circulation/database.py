import os
import sqlite3
from contextlib import contextmanager
from typing import Iterator

from dotenv import load_dotenv

from config import settings

# Make sure .env values are visible before the database path is resolved.
load_dotenv()

# Database file. LIBRARY_DB_FILE wins over the settings default so tests and
# callers can redirect it; assigning DATABASE_FILE at runtime also works
# because connections read it on every call.
DATABASE_FILE = os.environ.get("LIBRARY_DB_FILE") or settings.database_file

# Seconds a writer waits for the database lock held by another transaction
BUSY_TIMEOUT = 30.0


def get_db_connection() -> sqlite3.Connection:
    """Open a new connection to the circulation database."""
    conn = sqlite3.connect(DATABASE_FILE, timeout=BUSY_TIMEOUT)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """Run a block as one write transaction.

    ``BEGIN IMMEDIATE`` takes the write lock up front, so the read-then-write
    sequences inside the block cannot interleave with another writer.
    """
    conn = get_db_connection()
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.commit()
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.close()


def create_tables() -> None:
    """Create the tables and indexes if they do not exist yet."""
    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS libraries (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                code TEXT UNIQUE NOT NULL,
                loan_period_days INTEGER NOT NULL DEFAULT 14,
                fine_rate_per_day REAL NOT NULL DEFAULT 0.25,
                borrowing_limit INTEGER NOT NULL DEFAULT 5,
                is_active INTEGER NOT NULL DEFAULT 1
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                email TEXT UNIQUE NOT NULL,
                role TEXT NOT NULL DEFAULT 'MEMBER',
                membership_type TEXT NOT NULL DEFAULT 'STANDARD',
                global_borrow_limit INTEGER NOT NULL DEFAULT 5,
                parent_account_id TEXT,
                FOREIGN KEY (parent_account_id) REFERENCES users(id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS works (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                author TEXT NOT NULL DEFAULT ''
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS editions (
                id TEXT PRIMARY KEY,
                work_id TEXT NOT NULL,
                isbn TEXT UNIQUE NOT NULL,
                format TEXT NOT NULL DEFAULT 'PAPERBACK',
                replacement_cost REAL NOT NULL DEFAULT 0,
                FOREIGN KEY (work_id) REFERENCES works(id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS copies (
                id TEXT PRIMARY KEY,
                edition_id TEXT NOT NULL,
                copy_code TEXT UNIQUE NOT NULL,
                owning_library_id TEXT NOT NULL,
                current_library_id TEXT NOT NULL,
                condition TEXT NOT NULL DEFAULT 'GOOD',
                status TEXT NOT NULL DEFAULT 'AVAILABLE',
                acquired_date TIMESTAMP NOT NULL,
                FOREIGN KEY (edition_id) REFERENCES editions(id),
                FOREIGN KEY (owning_library_id) REFERENCES libraries(id),
                FOREIGN KEY (current_library_id) REFERENCES libraries(id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS borrows (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                borrower_id TEXT NOT NULL,
                beneficiary_id TEXT NOT NULL,
                acting_user_id TEXT NOT NULL,
                copy_id TEXT NOT NULL,
                edition_id TEXT NOT NULL,
                library_id TEXT NOT NULL,
                borrowed_at TIMESTAMP NOT NULL,
                due_date TIMESTAMP NOT NULL,
                status TEXT NOT NULL DEFAULT 'BORROWED',
                return_date TIMESTAMP,
                returned_to_library_id TEXT,
                fine REAL NOT NULL DEFAULT 0,
                fine_breakdown TEXT,
                condition_at_borrow TEXT NOT NULL,
                condition_at_return TEXT,
                notes TEXT,
                FOREIGN KEY (copy_id) REFERENCES copies(id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS fine_policies (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                library_id TEXT NOT NULL,
                rate_per_day REAL NOT NULL,
                effective_from DATE NOT NULL,
                effective_to DATE,
                created_by TEXT,
                created_at TIMESTAMP NOT NULL,
                FOREIGN KEY (library_id) REFERENCES libraries(id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS reservations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                edition_id TEXT NOT NULL,
                preferred_library_id TEXT,
                position INTEGER NOT NULL,
                status TEXT NOT NULL DEFAULT 'PENDING',
                membership_tier TEXT NOT NULL,
                effective_priority INTEGER NOT NULL,
                priority_boosted_at TIMESTAMP,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS shipments (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                copy_id TEXT NOT NULL,
                from_library_id TEXT NOT NULL,
                to_library_id TEXT NOT NULL,
                reason TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'PENDING',
                triggered_by TEXT,
                created_at TIMESTAMP NOT NULL,
                delivered_at TIMESTAMP,
                FOREIGN KEY (copy_id) REFERENCES copies(id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS damage_reports (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                copy_id TEXT NOT NULL,
                borrow_id INTEGER,
                reported_by TEXT NOT NULL,
                description TEXT NOT NULL,
                replacement_cost REAL NOT NULL,
                depreciated_value REAL NOT NULL,
                damage_fee REAL NOT NULL,
                flagged_borrowers TEXT NOT NULL DEFAULT '[]',
                status TEXT NOT NULL DEFAULT 'OPEN',
                created_at TIMESTAMP NOT NULL,
                FOREIGN KEY (copy_id) REFERENCES copies(id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS notifications (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                title TEXT NOT NULL,
                message TEXT NOT NULL,
                category TEXT NOT NULL,
                is_read INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMP NOT NULL
            )
        """)

        # Invariants enforced by the data layer itself
        cursor.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS uq_borrows_open_copy ON borrows(copy_id) WHERE status = 'BORROWED'"
        )
        cursor.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS uq_reservations_pending ON reservations(user_id, edition_id) "
            "WHERE status = 'PENDING'"
        )
        cursor.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS uq_fine_policies_open ON fine_policies(library_id) "
            "WHERE effective_to IS NULL"
        )

        # Lookup indexes
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_copies_edition ON copies(edition_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_copies_current_library ON copies(current_library_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_copies_status ON copies(status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_borrows_borrower_status ON borrows(borrower_id, status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_borrows_copy ON borrows(copy_id, borrowed_at)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_borrows_due_date ON borrows(due_date)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_fine_policies_library ON fine_policies(library_id, effective_from)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_reservations_edition_status ON reservations(edition_id, status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_shipments_status ON shipments(status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_shipments_from ON shipments(from_library_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_shipments_to ON shipments(to_library_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_damage_reports_status ON damage_reports(status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, is_read)")

        conn.commit()
    finally:
        conn.close()


def initialize_database() -> None:
    """Create the schema if needed. Safe to call on every start."""
    create_tables()
