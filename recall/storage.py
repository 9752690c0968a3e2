"""SQLite storage for the activity memory pipeline.

One database file holds every entity: analyses, sessions (with an ordered
segment join), projects, habits, summaries, suggestions and a small
key/value table for pipeline state. The schema is brought up to date by
``recall.migrations`` when the store is opened.

Write model:
- Every unit of work (one analysis grouped, one habit pass, one summary)
  runs in a single ``BEGIN IMMEDIATE`` transaction via run_transaction().
- A "database is locked" failure re-runs the whole unit against freshly
  committed state, up to ``max_retries`` times, then raises
  TransientStoreError.
- Reads use short autocommit connections and never hold the writer lock.

Most methods accept an optional ``conn``. When given, the statement joins
the caller's transaction; when omitted, reads open their own connection
and writes run as their own transaction.

Example:
    >>> storage = MemoryStorage("/tmp/memory.db")
    >>> storage.save_analysis(analysis)
    >>> session = storage.get_open_session()
"""

import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .errors import MigrationError, TransientStoreError
from .migrations import LATEST_VERSION, run_migrations
from .models import (
    GROUPING_GROUPED,
    GROUPING_PENDING,
    STATUS_PENDING,
    ActivitySession,
    Habit,
    ProactiveSuggestion,
    Project,
    ScreenshotAnalysis,
    Summary,
)

logger = logging.getLogger(__name__)

_LIST_FIELDS_ANALYSIS = (
    'accomplishments', 'context_tags', 'people_mentioned',
    'technologies', 'file_names', 'error_indicators',
)


def _dumps(value) -> str:
    return json.dumps(value or [], ensure_ascii=False)


def _loads(value, default=None):
    if value is None or value == '':
        return [] if default is None else default
    try:
        return json.loads(value)
    except ValueError:
        return [] if default is None else default


def _is_lock_error(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return 'locked' in message or 'busy' in message


def escape_like(text: str) -> str:
    """Escape LIKE wildcards so user input matches literally (ESCAPE '\\')."""
    return text.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')


class MemoryStorage:
    """SQLite database interface for the memory pipeline.

    Attributes:
        db_path (str): Absolute path to the SQLite database file
        max_retries (int): Retries for a locked database per unit of work
        ready (bool): True once the schema is at the latest generation
        migrating (bool): True while migrations are being applied
    """

    def __init__(self, db_path, max_retries: int = 3, retry_delay: float = 0.05,
                 migrations=None, busy_timeout: float = 5.0):
        """Open the store and bring the schema up to date.

        Args:
            db_path: Path to SQLite database file (parent dirs are created)
            max_retries: Retries for "database is locked" per unit of work
            retry_delay: Base delay in seconds for retry backoff
            migrations: Override the migration chain (tests only)
            busy_timeout: Seconds sqlite waits on a lock before each attempt fails

        Raises:
            RuntimeError: If the data directory cannot be created
            MigrationError: If the schema cannot be migrated
        """
        path = Path(db_path).expanduser()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except PermissionError as e:
            raise RuntimeError(f"Permission denied creating data directory {path.parent}: {e}") from e

        self.db_path = str(path)
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.busy_timeout = busy_timeout
        self._local = threading.local()
        self.ready = False
        self.migrating = False
        self.init_db(migrations)

    @contextmanager
    def get_connection(self):
        """Context manager for SQLite connections in autocommit mode.

        Yields:
            sqlite3.Connection with Row factory and foreign keys enabled
        """
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _conn(self, conn: Optional[sqlite3.Connection]):
        if conn is not None:
            yield conn
        else:
            with self.get_connection() as own:
                yield own

    def init_db(self, migrations=None) -> None:
        """Enable WAL and apply pending schema migrations.

        Raises:
            MigrationError: If any migration step fails
        """
        self.migrating = True
        try:
            with self.get_connection() as conn:
                conn.execute("PRAGMA journal_mode = WAL")
                applied = run_migrations(conn, migrations)
                if applied:
                    logger.info(f"Applied migrations {applied} to {self.db_path}")
                version = self.schema_version(conn)
        except MigrationError:
            raise
        except sqlite3.Error as e:
            raise MigrationError(f"Cannot open database {self.db_path}: {e}") from e
        finally:
            self.migrating = False

        expected = LATEST_VERSION if migrations is None else migrations[-1][0]
        self.ready = version >= expected

    def schema_version(self, conn: Optional[sqlite3.Connection] = None) -> int:
        with self._conn(conn) as c:
            row = c.execute("SELECT MAX(version) FROM schema_version").fetchone()
            return row[0] or 0

    def run_transaction(self, unit: Callable[[sqlite3.Connection], object]):
        """Run ``unit(conn)`` inside one write transaction with bounded retry.

        The unit is re-run from the start on a lock conflict, so it must
        read whatever it needs through the connection it is given. Callbacks
        registered with after_commit() during the unit run once the commit
        succeeds and are dropped on rollback.

        Returns:
            Whatever the unit returns

        Raises:
            TransientStoreError: If the database stays locked after all retries
        """
        attempt = 0
        outer = getattr(self._local, 'pending', None)
        try:
            while True:
                self._local.pending = []
                try:
                    with self.get_connection() as conn:
                        conn.execute("BEGIN IMMEDIATE")
                        try:
                            result = unit(conn)
                            conn.execute("COMMIT")
                        except BaseException:
                            if conn.in_transaction:
                                conn.execute("ROLLBACK")
                            raise
                    callbacks, self._local.pending = self._local.pending, None
                    self._run_callbacks(callbacks)
                    return result
                except sqlite3.OperationalError as e:
                    if not _is_lock_error(e):
                        raise
                    if attempt >= self.max_retries:
                        raise TransientStoreError(
                            f"Database busy after {attempt + 1} attempts: {e}"
                        ) from e
                    delay = self.retry_delay * (2 ** attempt)
                    logger.warning(f"Database locked, retrying in {delay:.2f}s ({attempt + 1}/{self.max_retries})")
                    time.sleep(delay)
                    attempt += 1
        finally:
            self._local.pending = outer

    def after_commit(self, callback: Callable[[], object]) -> None:
        """Defer ``callback`` until the current transaction commits.

        Outside run_transaction the callback runs immediately.
        """
        pending = getattr(self._local, 'pending', None)
        if pending is None:
            self._run_callbacks([callback])
        else:
            pending.append(callback)

    def _run_callbacks(self, callbacks) -> None:
        for callback in callbacks:
            try:
                callback()
            except OSError as e:
                logger.error(f"Post-commit write failed: {e}")

    def _write(self, conn: Optional[sqlite3.Connection], unit: Callable[[sqlite3.Connection], object]):
        if conn is not None:
            return unit(conn)
        return self.run_transaction(unit)

    # Analyses

    def save_analysis(self, analysis: ScreenshotAnalysis, conn=None) -> None:
        """Insert or replace an analysis keyed by segment id.

        Reprocessing replaces the content in place. A record that was
        already grouped keeps its grouping status so session membership
        stays consistent.
        """
        row = analysis.to_dict()
        for name in _LIST_FIELDS_ANALYSIS:
            row[name] = _dumps(row[name])
        row['is_continuation'] = int(row['is_continuation'])
        row['is_valid'] = int(row['is_valid'])
        columns = list(row.keys())
        updates = ", ".join(
            f"{c} = excluded.{c}" for c in columns
            if c not in ('segment_id', 'grouping_status')
        )

        def unit(c):
            c.execute(
                f"""
                INSERT INTO screenshot_analyses ({', '.join(columns)})
                VALUES ({', '.join('?' for _ in columns)})
                ON CONFLICT(segment_id) DO UPDATE SET {updates},
                    grouping_status = CASE
                        WHEN screenshot_analyses.grouping_status = '{GROUPING_GROUPED}'
                        THEN screenshot_analyses.grouping_status
                        ELSE excluded.grouping_status
                    END
                """,
                [row[c] for c in columns],
            )

        self._write(conn, unit)

    def _row_to_analysis(self, row: sqlite3.Row) -> ScreenshotAnalysis:
        data = dict(row)
        for name in _LIST_FIELDS_ANALYSIS:
            data[name] = _loads(data.get(name))
        data['is_continuation'] = bool(data.get('is_continuation'))
        data['is_valid'] = bool(data.get('is_valid'))
        data['productivity_score'] = data.get('productivity_score') or 5
        data['focus_level'] = data.get('focus_level') or 'normal'
        data['interaction_mode'] = data.get('interaction_mode') or 'mixed'
        data['activity_description'] = data.get('activity_description') or ''
        data['activity_summary'] = data.get('activity_summary') or ''
        return ScreenshotAnalysis(**data)

    def get_analysis(self, segment_id: str, conn=None) -> Optional[ScreenshotAnalysis]:
        with self._conn(conn) as c:
            row = c.execute(
                "SELECT * FROM screenshot_analyses WHERE segment_id = ?", (segment_id,)
            ).fetchone()
            return self._row_to_analysis(row) if row else None

    def get_pending_analyses(self, limit: Optional[int] = None, conn=None) -> List[ScreenshotAnalysis]:
        """Analyses still waiting for the grouper, in capture order."""
        sql = """
            SELECT * FROM screenshot_analyses
            WHERE grouping_status = ?
            ORDER BY captured_at ASC, segment_id ASC
        """
        params: list = [GROUPING_PENDING]
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        with self._conn(conn) as c:
            return [self._row_to_analysis(r) for r in c.execute(sql, params).fetchall()]

    def set_grouping_status(self, segment_id: str, status: str, conn=None) -> None:
        self._write(conn, lambda c: c.execute(
            "UPDATE screenshot_analyses SET grouping_status = ? WHERE segment_id = ?",
            (status, segment_id),
        ))

    def get_session_analyses(self, session_id: str, conn=None) -> List[ScreenshotAnalysis]:
        with self._conn(conn) as c:
            rows = c.execute(
                """
                SELECT a.* FROM screenshot_analyses a
                JOIN session_segments s ON s.segment_id = a.segment_id
                WHERE s.session_id = ?
                ORDER BY s.position ASC
                """,
                (session_id,),
            ).fetchall()
            return [self._row_to_analysis(r) for r in rows]

    def get_latest_capture_time(self, conn=None) -> Optional[int]:
        with self._conn(conn) as c:
            row = c.execute("SELECT MAX(captured_at) FROM screenshot_analyses").fetchone()
            return row[0]

    def count_analyses_by_status(self) -> Dict[str, int]:
        with self.get_connection() as conn:
            rows = conn.execute(
                "SELECT grouping_status, COUNT(*) AS n FROM screenshot_analyses GROUP BY grouping_status"
            ).fetchall()
            return {r['grouping_status']: r['n'] for r in rows}

    # Sessions

    def save_session(self, session: ActivitySession, conn=None) -> None:
        """Insert or update a session row (membership is stored separately)."""
        def unit(c):
            c.execute(
                """
                INSERT INTO activity_sessions
                    (id, title, start_time, end_time, duration_seconds, application, category,
                     tags, segment_summaries, markdown_path, summary, indexed, closed,
                     productivity_avg, has_errors, created_at, closed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    title = excluded.title,
                    start_time = excluded.start_time,
                    end_time = excluded.end_time,
                    duration_seconds = excluded.duration_seconds,
                    application = excluded.application,
                    category = excluded.category,
                    tags = excluded.tags,
                    segment_summaries = excluded.segment_summaries,
                    markdown_path = excluded.markdown_path,
                    summary = excluded.summary,
                    indexed = excluded.indexed,
                    closed = excluded.closed,
                    productivity_avg = excluded.productivity_avg,
                    has_errors = excluded.has_errors,
                    closed_at = excluded.closed_at
                """,
                (
                    session.id, session.title, session.start_time, session.end_time,
                    session.duration_seconds, session.application, session.category,
                    _dumps(session.tags), _dumps(session.segment_summaries),
                    session.markdown_path, session.summary, int(session.indexed),
                    int(session.closed), session.productivity_avg, int(session.has_errors),
                    session.created_at, session.closed_at,
                ),
            )

        self._write(conn, unit)

    def add_session_segment(self, session_id: str, segment_id: str, position: int, conn=None) -> None:
        """Attach a segment to a session. A segment can belong to one session only."""
        self._write(conn, lambda c: c.execute(
            "INSERT INTO session_segments (session_id, segment_id, position) VALUES (?, ?, ?)",
            (session_id, segment_id, position),
        ))

    def _row_to_session(self, row: sqlite3.Row, c: sqlite3.Connection) -> ActivitySession:
        data = dict(row)
        segment_ids = [
            r[0] for r in c.execute(
                "SELECT segment_id FROM session_segments WHERE session_id = ? ORDER BY position",
                (data['id'],),
            ).fetchall()
        ]
        return ActivitySession(
            id=data['id'],
            title=data['title'],
            start_time=data['start_time'],
            end_time=data['end_time'],
            application=data['application'] or '',
            category=data['category'] or 'other',
            segment_ids=segment_ids,
            segment_summaries=_loads(data.get('segment_summaries')),
            tags=_loads(data.get('tags')),
            markdown_path=data.get('markdown_path'),
            summary=data.get('summary'),
            indexed=bool(data.get('indexed')),
            closed=bool(data.get('closed')),
            productivity_avg=data.get('productivity_avg') if data.get('productivity_avg') is not None else 5.0,
            has_errors=bool(data.get('has_errors')),
            created_at=data['created_at'],
            closed_at=data.get('closed_at'),
        )

    def _query_sessions(self, sql: str, params=(), conn=None) -> List[ActivitySession]:
        with self._conn(conn) as c:
            rows = c.execute(sql, params).fetchall()
            return [self._row_to_session(r, c) for r in rows]

    def get_session(self, session_id: str, conn=None) -> Optional[ActivitySession]:
        sessions = self._query_sessions(
            "SELECT * FROM activity_sessions WHERE id = ?", (session_id,), conn
        )
        return sessions[0] if sessions else None

    def get_open_session(self, conn=None) -> Optional[ActivitySession]:
        sessions = self._query_sessions(
            "SELECT * FROM activity_sessions WHERE closed = 0 ORDER BY start_time DESC LIMIT 1",
            (), conn,
        )
        return sessions[0] if sessions else None

    def get_last_session(self, conn=None) -> Optional[ActivitySession]:
        sessions = self._query_sessions(
            "SELECT * FROM activity_sessions ORDER BY end_time DESC LIMIT 1", (), conn
        )
        return sessions[0] if sessions else None

    def get_sessions_in_range(self, start: int, end: int, closed_only: bool = False,
                              conn=None) -> List[ActivitySession]:
        """Sessions overlapping [start, end], ordered by start time."""
        sql = "SELECT * FROM activity_sessions WHERE start_time <= ? AND end_time >= ?"
        if closed_only:
            sql += " AND closed = 1"
        sql += " ORDER BY start_time ASC"
        return self._query_sessions(sql, (end, start), conn)

    def get_recent_closed_sessions(self, limit: int, conn=None) -> List[ActivitySession]:
        """Most recent closed sessions, newest first."""
        return self._query_sessions(
            "SELECT * FROM activity_sessions WHERE closed = 1 ORDER BY start_time DESC LIMIT ?",
            (limit,), conn,
        )

    def search_sessions(self, terms: List[str], conn=None) -> List[ActivitySession]:
        """Closed or open sessions whose text fields contain any of the terms."""
        if not terms:
            return []
        clauses = []
        params = []
        for term in terms:
            pattern = f"%{escape_like(term)}%"
            clauses.append(
                "(title LIKE ? ESCAPE '\\' OR tags LIKE ? ESCAPE '\\' OR application LIKE ? ESCAPE '\\' "
                "OR summary LIKE ? ESCAPE '\\' OR segment_summaries LIKE ? ESCAPE '\\')"
            )
            params.extend([pattern] * 5)
        sql = f"SELECT * FROM activity_sessions WHERE {' OR '.join(clauses)} ORDER BY start_time DESC"
        return self._query_sessions(sql, params, conn)

    def get_sessions_without_project(self, closed_after: int = 0, closed_before: Optional[int] = None,
                                     conn=None) -> List[ActivitySession]:
        """Closed sessions with no project link, closed in (closed_after, closed_before]."""
        sql = """
            SELECT * FROM activity_sessions
            WHERE closed = 1 AND COALESCE(closed_at, end_time) > ?
              AND id NOT IN (SELECT session_id FROM project_sessions)
        """
        params = [closed_after]
        if closed_before is not None:
            sql += " AND COALESCE(closed_at, end_time) <= ?"
            params.append(closed_before)
        return self._query_sessions(sql + " ORDER BY COALESCE(closed_at, end_time) ASC, start_time ASC", params, conn)

    # Projects

    def _row_to_project(self, row: sqlite3.Row, c: sqlite3.Connection) -> Project:
        data = dict(row)
        session_ids = [
            r[0] for r in c.execute(
                """
                SELECT ps.session_id FROM project_sessions ps
                JOIN activity_sessions s ON s.id = ps.session_id
                WHERE ps.project_id = ? ORDER BY s.start_time
                """,
                (data['id'],),
            ).fetchall()
        ]
        return Project(
            id=data['id'],
            name=data['name'],
            normalized_name=data['normalized_name'],
            technologies=_loads(data.get('technologies')),
            first_seen=data['first_seen'],
            last_seen=data['last_seen'],
            session_ids=session_ids,
            markdown_path=data.get('markdown_path'),
        )

    def get_project_by_normalized_name(self, normalized_name: str, conn=None) -> Optional[Project]:
        with self._conn(conn) as c:
            row = c.execute(
                "SELECT * FROM projects WHERE normalized_name = ?", (normalized_name,)
            ).fetchone()
            return self._row_to_project(row, c) if row else None

    def get_project(self, project_id: str, conn=None) -> Optional[Project]:
        with self._conn(conn) as c:
            row = c.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
            return self._row_to_project(row, c) if row else None

    def list_projects(self, conn=None) -> List[Project]:
        with self._conn(conn) as c:
            rows = c.execute("SELECT * FROM projects ORDER BY last_seen DESC").fetchall()
            return [self._row_to_project(r, c) for r in rows]

    def save_project(self, project: Project, conn=None) -> None:
        self._write(conn, lambda c: c.execute(
            """
            INSERT INTO projects (id, name, normalized_name, technologies, first_seen, last_seen, markdown_path)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                technologies = excluded.technologies,
                first_seen = excluded.first_seen,
                last_seen = excluded.last_seen,
                markdown_path = excluded.markdown_path
            """,
            (project.id, project.name, project.normalized_name, _dumps(project.technologies),
             project.first_seen, project.last_seen, project.markdown_path),
        ))

    def link_project_session(self, project_id: str, session_id: str, conn=None) -> None:
        self._write(conn, lambda c: c.execute(
            "INSERT OR IGNORE INTO project_sessions (project_id, session_id) VALUES (?, ?)",
            (project_id, session_id),
        ))

    def get_project_ids_for_sessions(self, session_ids: List[str], conn=None) -> List[str]:
        if not session_ids:
            return []
        placeholders = ', '.join('?' for _ in session_ids)
        with self._conn(conn) as c:
            rows = c.execute(
                f"""
                SELECT DISTINCT project_id FROM project_sessions
                WHERE session_id IN ({placeholders}) ORDER BY project_id
                """,
                session_ids,
            ).fetchall()
            return [r[0] for r in rows]

    # Habits

    def _row_to_habit(self, row: sqlite3.Row) -> Habit:
        data = dict(row)
        data['trigger_conditions'] = _loads(data.get('trigger_conditions'), default={}) or None
        return Habit(**data)

    def get_habit(self, pattern_type: str, signature: str, conn=None) -> Optional[Habit]:
        with self._conn(conn) as c:
            row = c.execute(
                "SELECT * FROM habits WHERE pattern_type = ? AND signature = ?",
                (pattern_type, signature),
            ).fetchone()
            return self._row_to_habit(row) if row else None

    def list_habits(self, pattern_type: Optional[str] = None, conn=None) -> List[Habit]:
        sql = "SELECT * FROM habits"
        params = []
        if pattern_type:
            sql += " WHERE pattern_type = ?"
            params.append(pattern_type)
        sql += " ORDER BY confidence DESC, id ASC"
        with self._conn(conn) as c:
            return [self._row_to_habit(r) for r in c.execute(sql, params).fetchall()]

    def save_habit(self, habit: Habit, conn=None) -> None:
        """Upsert a habit keyed by (pattern_type, signature)."""
        conditions = json.dumps(habit.trigger_conditions, sort_keys=True) if habit.trigger_conditions else None
        self._write(conn, lambda c: c.execute(
            """
            INSERT INTO habits
                (id, pattern_name, pattern_type, signature, confidence, frequency,
                 trigger_conditions, typical_time, last_occurrence, occurrence_count,
                 markdown_path, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(pattern_type, signature) DO UPDATE SET
                pattern_name = excluded.pattern_name,
                confidence = excluded.confidence,
                frequency = excluded.frequency,
                trigger_conditions = excluded.trigger_conditions,
                typical_time = excluded.typical_time,
                last_occurrence = excluded.last_occurrence,
                occurrence_count = excluded.occurrence_count,
                markdown_path = excluded.markdown_path,
                updated_at = excluded.updated_at
            """,
            (habit.id, habit.pattern_name, habit.pattern_type, habit.signature,
             habit.confidence, habit.frequency, conditions, habit.typical_time,
             habit.last_occurrence, habit.occurrence_count, habit.markdown_path,
             habit.created_at, habit.updated_at),
        ))

    def delete_habit(self, habit_id: str, conn=None) -> None:
        self._write(conn, lambda c: c.execute("DELETE FROM habits WHERE id = ?", (habit_id,)))

    # Summaries

    def _row_to_summary(self, row: sqlite3.Row) -> Summary:
        data = dict(row)
        data['activity_ids'] = _loads(data.get('activity_ids'))
        data['project_ids'] = _loads(data.get('project_ids'))
        data['insufficient_data'] = bool(data.get('insufficient_data'))
        return Summary(**data)

    def get_summary(self, summary_id: str, conn=None) -> Optional[Summary]:
        with self._conn(conn) as c:
            row = c.execute("SELECT * FROM summaries WHERE id = ?", (summary_id,)).fetchone()
            return self._row_to_summary(row) if row else None

    def get_summaries(self, summary_type: Optional[str] = None, date_start: Optional[str] = None,
                      date_end: Optional[str] = None, conn=None) -> List[Summary]:
        """Summaries overlapping the inclusive ISO date range, oldest first."""
        clauses = []
        params = []
        if summary_type:
            clauses.append("summary_type = ?")
            params.append(summary_type)
        if date_end:
            clauses.append("date_start <= ?")
            params.append(date_end)
        if date_start:
            clauses.append("date_end >= ?")
            params.append(date_start)
        sql = "SELECT * FROM summaries"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY date_start ASC, summary_type ASC"
        with self._conn(conn) as c:
            return [self._row_to_summary(r) for r in c.execute(sql, params).fetchall()]

    def delete_overlapping_summaries(self, summary_type: str, date_start: str, date_end: str,
                                     keep_id: Optional[str] = None, conn=None) -> int:
        """Remove same-type summaries whose range overlaps the given one."""
        def unit(c):
            cursor = c.execute(
                """
                DELETE FROM summaries
                WHERE summary_type = ? AND date_start <= ? AND date_end >= ? AND id != ?
                """,
                (summary_type, date_end, date_start, keep_id or ''),
            )
            return cursor.rowcount

        return self._write(conn, unit)

    def save_summary(self, summary: Summary, conn=None) -> None:
        self._write(conn, lambda c: c.execute(
            """
            INSERT OR REPLACE INTO summaries
                (id, summary_type, date_start, date_end, content, activity_ids, project_ids,
                 markdown_path, insufficient_data, input_fingerprint, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (summary.id, summary.summary_type, summary.date_start, summary.date_end,
             summary.content, _dumps(summary.activity_ids), _dumps(summary.project_ids),
             summary.markdown_path, int(summary.insufficient_data), summary.input_fingerprint,
             summary.created_at),
        ))

    # Suggestions

    def _row_to_suggestion(self, row: sqlite3.Row) -> ProactiveSuggestion:
        return ProactiveSuggestion(**dict(row))

    def insert_suggestion(self, suggestion: ProactiveSuggestion, conn=None) -> None:
        """Insert a suggestion.

        Raises:
            sqlite3.IntegrityError: If a pending suggestion already exists for
                the same trigger signature
        """
        self._write(conn, lambda c: c.execute(
            """
            INSERT INTO suggestions
                (id, trigger_type, trigger_signature, priority, title, message, status,
                 response, created_at, responded_at, expires_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (suggestion.id, suggestion.trigger_type, suggestion.trigger_signature,
             suggestion.priority, suggestion.title, suggestion.message, suggestion.status,
             suggestion.response, suggestion.created_at, suggestion.responded_at,
             suggestion.expires_at),
        ))

    def update_suggestion_status(self, suggestion_id: str, status: str, response: Optional[str],
                                 responded_at: Optional[int], conn=None) -> None:
        self._write(conn, lambda c: c.execute(
            "UPDATE suggestions SET status = ?, response = ?, responded_at = ? WHERE id = ?",
            (status, response, responded_at, suggestion_id),
        ))

    def get_suggestion(self, suggestion_id: str, conn=None) -> Optional[ProactiveSuggestion]:
        with self._conn(conn) as c:
            row = c.execute("SELECT * FROM suggestions WHERE id = ?", (suggestion_id,)).fetchone()
            return self._row_to_suggestion(row) if row else None

    def get_suggestions(self, status: Optional[str] = None, conn=None) -> List[ProactiveSuggestion]:
        sql = "SELECT * FROM suggestions"
        params = []
        if status:
            sql += " WHERE status = ?"
            params.append(status)
        sql += " ORDER BY created_at DESC, id ASC"
        with self._conn(conn) as c:
            return [self._row_to_suggestion(r) for r in c.execute(sql, params).fetchall()]

    def get_pending_for_signature(self, signature: str, conn=None) -> Optional[ProactiveSuggestion]:
        with self._conn(conn) as c:
            row = c.execute(
                "SELECT * FROM suggestions WHERE trigger_signature = ? AND status = ?",
                (signature, STATUS_PENDING),
            ).fetchone()
            return self._row_to_suggestion(row) if row else None

    def get_last_resolution_time(self, signature: str, conn=None) -> Optional[int]:
        with self._conn(conn) as c:
            row = c.execute(
                "SELECT MAX(responded_at) FROM suggestions WHERE trigger_signature = ?",
                (signature,),
            ).fetchone()
            return row[0]

    def get_expirable_suggestions(self, now: int, conn=None) -> List[ProactiveSuggestion]:
        with self._conn(conn) as c:
            rows = c.execute(
                "SELECT * FROM suggestions WHERE status = ? AND expires_at IS NOT NULL AND expires_at <= ?",
                (STATUS_PENDING, now),
            ).fetchall()
            return [self._row_to_suggestion(r) for r in rows]

    # Pipeline state

    def get_state(self, key: str, default: Optional[str] = None, conn=None) -> Optional[str]:
        with self._conn(conn) as c:
            row = c.execute("SELECT value FROM pipeline_state WHERE key = ?", (key,)).fetchone()
            return row[0] if row else default

    def set_state(self, key: str, value: str, conn=None) -> None:
        self._write(conn, lambda c: c.execute(
            "INSERT OR REPLACE INTO pipeline_state (key, value) VALUES (?, ?)", (key, str(value))
        ))
