"""
SQLite-backed document store for profiles, counters, index records, flags and audit reports.
"""

import sqlite3
from contextlib import contextmanager
from typing import Generator, Optional

from .config import get_db_path, ensure_db_directory


@contextmanager
def get_db(db_path: str = None) -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite database connection."""
    conn = sqlite3.connect(db_path or get_db_path(), timeout=30)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def immediate_transaction(db_path: str = None) -> Generator[sqlite3.Connection, None, None]:
    """Connection inside BEGIN IMMEDIATE; commits on success, rolls back on error."""
    conn = sqlite3.connect(db_path or get_db_path(), timeout=30, isolation_level=None)
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    finally:
        conn.close()


def init_db(db_path: str = None):
    """Initialize the database with required tables."""
    ensure_db_directory(db_path)

    with get_db(db_path) as conn:
        cursor = conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")

        # Small key/value table for watermarks and markers
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS interest_profiles (
                viewer_id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        ''')

        # Aggregated per-creator activity, input to relevance recomputation
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS creator_stats (
                creator_id TEXT PRIMARY KEY,
                views INTEGER NOT NULL DEFAULT 0,
                retention_sum REAL NOT NULL DEFAULT 0,
                audience_languages TEXT NOT NULL DEFAULT '{}',
                audience_regions TEXT NOT NULL DEFAULT '{}',
                audience_categories TEXT NOT NULL DEFAULT '{}',
                last_event_at TEXT
            )
        ''')

        # Event ids already folded into profiles and creator stats
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS ingested_events (
                event_id TEXT PRIMARY KEY,
                ingested_at TEXT NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS impression_keys (
                bucket TEXT NOT NULL,
                creator_id TEXT NOT NULL,
                viewer_id TEXT NOT NULL,
                session_id TEXT NOT NULL,
                PRIMARY KEY (bucket, creator_id, viewer_id, session_id)
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS impression_counts (
                creator_id TEXT NOT NULL,
                bucket TEXT NOT NULL,
                count INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (creator_id, bucket)
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS relevance_records (
                creator_id TEXT PRIMARY KEY,
                generation INTEGER NOT NULL,
                data TEXT NOT NULL,
                computed_at TEXT NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS manipulation_flags (
                flag_id TEXT PRIMARY KEY,
                creator_id TEXT NOT NULL,
                descriptor_ref TEXT NOT NULL,
                fingerprint TEXT NOT NULL,
                status TEXT NOT NULL,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS audit_reports (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                audit_id TEXT NOT NULL UNIQUE,
                passed BOOLEAN NOT NULL,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        ''')

        # Reports are immutable once written
        cursor.execute('''
            CREATE TRIGGER IF NOT EXISTS audit_reports_no_update
            BEFORE UPDATE ON audit_reports
            BEGIN
                SELECT RAISE(ABORT, 'audit reports are append-only');
            END
        ''')
        cursor.execute('''
            CREATE TRIGGER IF NOT EXISTS audit_reports_no_delete
            BEFORE DELETE ON audit_reports
            BEGIN
                SELECT RAISE(ABORT, 'audit reports are append-only');
            END
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS corrective_params (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        ''')

        # Create indexes for performance
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_flags_creator_ref ON manipulation_flags(creator_id, descriptor_ref)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_impression_counts_bucket ON impression_counts(bucket)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_creator_stats_last_event ON creator_stats(last_event_at)')

        conn.commit()


def get_marker(key: str, db_path: str = None) -> Optional[str]:
    """Read a value from the kv table."""
    with get_db(db_path) as conn:
        row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None


def set_marker(key: str, value: str, db_path: str = None):
    """Upsert a value into the kv table."""
    with get_db(db_path) as conn:
        conn.execute(
            "INSERT INTO kv (key, value, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = CURRENT_TIMESTAMP",
            (key, value)
        )
        conn.commit()


def health_check(db_path: str = None):
    """Check database health."""
    try:
        with get_db(db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table';")
            tables = cursor.fetchall()

            table_names = [table[0] for table in tables]
            required_tables = [
                'interest_profiles', 'impression_counts', 'relevance_records',
                'manipulation_flags', 'audit_reports', 'corrective_params'
            ]

            return all(table in table_names for table in required_tables)
    except sqlite3.Error:
        return False
