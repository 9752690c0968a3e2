"""Ordered, additive schema migrations.

Each step takes a database at generation N-1 and brings it to generation
N. Steps only create tables, add nullable/defaulted columns and add
indexes, so rows written by older generations stay readable. A step is
applied inside its own transaction and recorded in ``schema_version``
exactly once.

Databases created before ``schema_version`` existed are handled by the
same chain: every step checks for existing tables and columns before
touching them.
"""

import logging
import sqlite3
import time
from typing import Callable, List, Tuple

from .errors import MigrationError

logger = logging.getLogger(__name__)


def _columns(conn: sqlite3.Connection, table: str) -> set:
    cursor = conn.execute(f"PRAGMA table_info({table})")
    return {row[1] for row in cursor.fetchall()}


def _add_columns(conn: sqlite3.Connection, table: str, columns: List[Tuple[str, str]]) -> None:
    """Add each (name, declaration) column that the table lacks."""
    existing = _columns(conn, table)
    for name, declaration in columns:
        if name not in existing:
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {declaration}")
            logger.info(f"Added '{name}' column to {table} table")


def migrate_v1(conn: sqlite3.Connection) -> None:
    """Base generation: analyses, sessions and the segment join."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS screenshot_analyses (
            segment_id TEXT PRIMARY KEY,
            captured_at INTEGER NOT NULL,
            application TEXT,
            window_title TEXT,
            activity_category TEXT,
            productivity_score INTEGER DEFAULT 5,
            is_continuation INTEGER DEFAULT 0,
            activity_description TEXT DEFAULT '',
            activity_summary TEXT DEFAULT '',
            context_tags TEXT DEFAULT '[]',
            raw_payload TEXT,
            analyzed_at INTEGER NOT NULL,
            is_valid INTEGER DEFAULT 1,
            validation_error TEXT,
            grouping_status TEXT DEFAULT 'pending'
        )
    """)
    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_analysis_captured
        ON screenshot_analyses(captured_at)
    """)
    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_analysis_grouping
        ON screenshot_analyses(grouping_status, captured_at)
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS activity_sessions (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            start_time INTEGER NOT NULL,
            end_time INTEGER NOT NULL,
            duration_seconds INTEGER NOT NULL DEFAULT 0,
            application TEXT,
            category TEXT,
            tags TEXT DEFAULT '[]',
            segment_summaries TEXT DEFAULT '[]',
            markdown_path TEXT,
            summary TEXT,
            indexed INTEGER DEFAULT 0,
            closed INTEGER DEFAULT 0,
            created_at INTEGER NOT NULL,
            closed_at INTEGER
        )
    """)
    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_session_start ON activity_sessions(start_time)
    """)
    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_session_end ON activity_sessions(end_time)
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS session_segments (
            session_id TEXT NOT NULL REFERENCES activity_sessions(id) ON DELETE CASCADE,
            segment_id TEXT NOT NULL UNIQUE REFERENCES screenshot_analyses(segment_id),
            position INTEGER NOT NULL,
            PRIMARY KEY (session_id, segment_id)
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS pipeline_state (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        )
    """)


def migrate_v2(conn: sqlite3.Connection) -> None:
    """Richer analysis fields, projects and summaries."""
    _add_columns(conn, 'screenshot_analyses', [
        ('url', 'TEXT'),
        ('focus_level', "TEXT DEFAULT 'normal'"),
        ('interaction_mode', "TEXT DEFAULT 'mixed'"),
        ('accomplishments', "TEXT DEFAULT '[]'"),
        ('project_name', 'TEXT'),
        ('people_mentioned', "TEXT DEFAULT '[]'"),
        ('technologies', "TEXT DEFAULT '[]'"),
    ])

    conn.execute("""
        CREATE TABLE IF NOT EXISTS projects (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            normalized_name TEXT NOT NULL UNIQUE,
            technologies TEXT DEFAULT '[]',
            first_seen INTEGER NOT NULL,
            last_seen INTEGER NOT NULL,
            markdown_path TEXT
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS project_sessions (
            project_id TEXT NOT NULL REFERENCES projects(id),
            session_id TEXT NOT NULL REFERENCES activity_sessions(id),
            PRIMARY KEY (project_id, session_id)
        )
    """)
    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_project_sessions_session
        ON project_sessions(session_id)
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS summaries (
            id TEXT PRIMARY KEY,
            summary_type TEXT NOT NULL,
            date_start TEXT NOT NULL,
            date_end TEXT NOT NULL,
            content TEXT NOT NULL,
            activity_ids TEXT DEFAULT '[]',
            project_ids TEXT DEFAULT '[]',
            markdown_path TEXT,
            created_at INTEGER NOT NULL
        )
    """)
    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_summary_range
        ON summaries(summary_type, date_start, date_end)
    """)


def migrate_v3(conn: sqlite3.Connection) -> None:
    """OCR/error fields, session stats, habits and suggestions."""
    _add_columns(conn, 'screenshot_analyses', [
        ('ocr_text', 'TEXT'),
        ('file_names', "TEXT DEFAULT '[]'"),
        ('error_indicators', "TEXT DEFAULT '[]'"),
    ])
    _add_columns(conn, 'activity_sessions', [
        ('productivity_avg', 'REAL DEFAULT 5.0'),
        ('has_errors', 'INTEGER DEFAULT 0'),
    ])
    _add_columns(conn, 'summaries', [
        ('insufficient_data', 'INTEGER DEFAULT 0'),
        ('input_fingerprint', 'TEXT'),
    ])

    conn.execute("""
        CREATE TABLE IF NOT EXISTS habits (
            id TEXT PRIMARY KEY,
            pattern_name TEXT NOT NULL,
            pattern_type TEXT NOT NULL,
            signature TEXT NOT NULL,
            confidence REAL NOT NULL,
            frequency TEXT NOT NULL,
            trigger_conditions TEXT,
            typical_time TEXT,
            last_occurrence INTEGER,
            occurrence_count INTEGER NOT NULL DEFAULT 0,
            markdown_path TEXT,
            created_at INTEGER NOT NULL,
            updated_at INTEGER NOT NULL,
            UNIQUE (pattern_type, signature)
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS suggestions (
            id TEXT PRIMARY KEY,
            trigger_type TEXT NOT NULL,
            trigger_signature TEXT NOT NULL,
            priority TEXT NOT NULL DEFAULT 'normal',
            title TEXT NOT NULL,
            message TEXT NOT NULL,
            status TEXT NOT NULL,
            response TEXT,
            created_at INTEGER NOT NULL,
            responded_at INTEGER,
            expires_at INTEGER
        )
    """)
    conn.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS idx_suggestion_one_pending
        ON suggestions(trigger_signature) WHERE status = 'pending'
    """)
    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_suggestion_signature
        ON suggestions(trigger_signature, responded_at)
    """)


MIGRATIONS: List[Tuple[int, str, Callable[[sqlite3.Connection], None]]] = [
    (1, "analyses and sessions", migrate_v1),
    (2, "projects, summaries and rich analysis fields", migrate_v2),
    (3, "habits, suggestions and error fields", migrate_v3),
]

LATEST_VERSION = MIGRATIONS[-1][0]


def current_version(conn: sqlite3.Connection) -> int:
    """Highest applied schema generation, 0 for an empty database."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            description TEXT NOT NULL,
            applied_at INTEGER NOT NULL
        )
    """)
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] or 0


def run_migrations(conn: sqlite3.Connection, migrations=None) -> List[int]:
    """Apply every migration newer than the recorded version.

    The connection must be in autocommit mode (isolation_level=None) so
    each step can own its transaction.

    Args:
        conn: Open SQLite connection
        migrations: Override the migration chain (used by tests)

    Returns:
        List of versions applied by this call (empty when up to date)

    Raises:
        MigrationError: If any step fails. The failing step is rolled back
            and later steps are not attempted.
    """
    migrations = MIGRATIONS if migrations is None else migrations
    applied = []
    try:
        version = current_version(conn)
    except sqlite3.Error as e:
        raise MigrationError(f"Cannot read schema version: {e}") from e

    for target, description, step in migrations:
        if target <= version:
            continue
        logger.info(f"Applying schema migration V{target}: {description}")
        try:
            conn.execute("BEGIN IMMEDIATE")
            step(conn)
            conn.execute(
                "INSERT INTO schema_version (version, description, applied_at) VALUES (?, ?, ?)",
                (target, description, int(time.time())),
            )
            conn.execute("COMMIT")
        except Exception as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            logger.error(f"Schema migration V{target} failed: {e}")
            raise MigrationError(f"Migration V{target} ({description}) failed: {e}") from e
        applied.append(target)
        version = target

    if applied:
        logger.info(f"Schema now at V{version}")
    return applied
