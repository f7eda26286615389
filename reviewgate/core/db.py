"""
SQLite foundation for review storage.
"""

import sqlite3
from contextlib import contextmanager
from typing import Generator

from .config import get_db_path, ensure_db_directory

REQUIRED_TABLES = [
    'review_requests',
    'approval_workflows',
    'human_feedback',
    'review_notifications',
    'notification_settings',
    'analytics_snapshots',
]


@contextmanager
def get_db() -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite database connection."""
    conn = sqlite3.connect(get_db_path(), timeout=10)
    try:
        yield conn
    finally:
        conn.close()


def init_db():
    """Initialize the database with required tables."""
    ensure_db_directory()

    with get_db() as conn:
        cursor = conn.cursor()

        # Indexed columns mirror the JSON payload for status/time queries
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS review_requests (
                id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                review_type TEXT NOT NULL,
                priority TEXT NOT NULL,
                assigned_to TEXT,
                created_at TEXT NOT NULL,
                reviewed_at TEXT,
                version INTEGER NOT NULL DEFAULT 0,
                payload TEXT NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS approval_workflows (
                id TEXT PRIMARY KEY,
                review_request_id TEXT NOT NULL UNIQUE,
                status TEXT NOT NULL,
                started_at TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 0,
                payload TEXT NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS human_feedback (
                id TEXT PRIMARY KEY,
                review_request_id TEXT NOT NULL,
                reviewer_id TEXT NOT NULL,
                provided_at TEXT NOT NULL,
                payload TEXT NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS review_notifications (
                id TEXT PRIMARY KEY,
                review_request_id TEXT NOT NULL,
                recipient_id TEXT NOT NULL,
                notification_type TEXT NOT NULL,
                created_at TEXT NOT NULL,
                is_read BOOLEAN DEFAULT FALSE,
                delivery_status TEXT NOT NULL,
                next_attempt_at TEXT,
                payload TEXT NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS notification_settings (
                user_id TEXT PRIMARY KEY,
                updated_at TEXT,
                payload TEXT NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS analytics_snapshots (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                generated_at TEXT NOT NULL,
                window_start TEXT,
                window_end TEXT,
                payload TEXT NOT NULL
            )
        ''')

        # Create indexes for performance
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_requests_status_created ON review_requests(status, created_at)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_workflows_status ON approval_workflows(status)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_feedback_review ON human_feedback(review_request_id, provided_at)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_notifications_recipient ON review_notifications(recipient_id, created_at DESC)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_notifications_review_type ON review_notifications(review_request_id, notification_type, created_at)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_notifications_delivery ON review_notifications(delivery_status, next_attempt_at)')

        conn.commit()


def health_check() -> bool:
    """Check database health."""
    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table';")
            table_names = [row[0] for row in cursor.fetchall()]
            return all(table in table_names for table in REQUIRED_TABLES)
    except sqlite3.Error:
        return False
