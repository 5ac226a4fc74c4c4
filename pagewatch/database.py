"""SQLite persistence for resources, check history, incidents and audits."""

import json
import logging
import sqlite3
import threading
from collections.abc import Iterable
from datetime import UTC, date, datetime, timedelta
from pathlib import Path

from .config import ResourceConfig
from .models import (
    AUDIT_NONE,
    CLAIMABLE_JOB_STATUSES,
    JOB_FAILED,
    JOB_PENDING,
    JOB_QUOTA_BLOCKED,
    JOB_RUNNING,
    JOB_SUCCESS,
    AuditJob,
    AuditRecord,
    AuditScores,
    CheckResult,
    Incident,
    MonitoredResource,
)

logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Raised when a database operation fails."""

    pass


# Global lock for thread-safe database access.
# The connection is shared by the scheduler threads, the probe pool and API handlers.
_db_lock = threading.Lock()


def to_timestamp(value: datetime) -> str:
    """Format a datetime as a fixed-width UTC ISO-8601 string.

    Fixed width keeps lexical ordering in SQL equal to chronological ordering.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _from_timestamp(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def init_db(db_path: str) -> sqlite3.Connection:
    """Initialize the database and create tables if they don't exist.

    Args:
        db_path: Path to the SQLite database file, or ":memory:".

    Returns:
        Database connection with WAL mode enabled.

    Raises:
        DatabaseError: If database initialization fails.
    """
    try:
        if db_path != ":memory:":
            parent_dir = Path(db_path).parent
            if not parent_dir.exists():
                parent_dir.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS resources (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                group_name TEXT NOT NULL DEFAULT 'default',
                url TEXT NOT NULL,
                enabled INTEGER NOT NULL DEFAULT 1,
                timeout_ms INTEGER NOT NULL DEFAULT 10000,
                soft_failure_patterns TEXT NOT NULL DEFAULT '[]',
                current_status TEXT,
                last_checked_at TEXT,
                audit_status TEXT NOT NULL DEFAULT 'none',
                audit_error TEXT
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS checks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                resource_id TEXT NOT NULL,
                url TEXT NOT NULL,
                status_code INTEGER,
                response_time_ms INTEGER NOT NULL,
                success INTEGER NOT NULL,
                status_label TEXT NOT NULL,
                error_kind TEXT,
                error_message TEXT,
                checked_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_checks_resource_checked_at
            ON checks(resource_id, checked_at)
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_checks_checked_at
            ON checks(checked_at)
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS incidents (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                resource_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                message TEXT NOT NULL,
                probable_cause TEXT,
                started_at TEXT NOT NULL,
                ended_at TEXT
            )
        """)
        # At most one open incident per resource.
        conn.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_incidents_one_open
            ON incidents(resource_id) WHERE ended_at IS NULL
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_incidents_resource_started_at
            ON incidents(resource_id, started_at)
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS audit_jobs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                resource_id TEXT NOT NULL,
                url TEXT NOT NULL,
                status TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                max_attempts INTEGER NOT NULL,
                scheduled_for TEXT NOT NULL,
                last_error TEXT,
                created_at TEXT NOT NULL,
                started_at TEXT,
                finished_at TEXT
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_audit_jobs_status_scheduled
            ON audit_jobs(status, scheduled_for)
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS audits (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                resource_id TEXT NOT NULL,
                audit_date TEXT NOT NULL,
                success INTEGER NOT NULL,
                performance INTEGER,
                accessibility INTEGER,
                best_practices INTEGER,
                seo INTEGER,
                error TEXT,
                audited_at TEXT NOT NULL,
                UNIQUE(resource_id, audit_date)
            )
        """)

        conn.commit()
        return conn

    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to initialize database: {e}")
    except OSError as e:
        raise DatabaseError(f"Failed to create database directory: {e}")


# =============================================================================
# RESOURCES
# =============================================================================


def _row_to_resource(row: sqlite3.Row) -> MonitoredResource:
    return MonitoredResource(
        id=row["id"],
        name=row["name"],
        url=row["url"],
        group=row["group_name"],
        enabled=bool(row["enabled"]),
        timeout_ms=row["timeout_ms"],
        soft_failure_patterns=tuple(json.loads(row["soft_failure_patterns"] or "[]")),
        current_status=row["current_status"],
        last_checked_at=_from_timestamp(row["last_checked_at"]),
        audit_status=row["audit_status"],
        audit_error=row["audit_error"],
    )


def sync_resources(conn: sqlite3.Connection, resources: Iterable[ResourceConfig]) -> list[str]:
    """Bring the resources table in line with the configured resources.

    New resources are inserted, existing ones updated in place (status fields are
    preserved) and resources no longer configured are disabled, never deleted,
    since incidents and history still reference them.

    Returns:
        Ids of resources inserted by this call.

    Raises:
        DatabaseError: If the sync fails.
    """
    resources = list(resources)
    inserted: list[str] = []
    try:
        with _db_lock:
            existing = {row["id"] for row in conn.execute("SELECT id FROM resources")}
            for resource in resources:
                values = (
                    resource.name,
                    resource.group,
                    resource.url,
                    1 if resource.enabled else 0,
                    resource.timeout_ms,
                    json.dumps(list(resource.soft_failure_patterns)),
                    resource.id,
                )
                if resource.id in existing:
                    conn.execute(
                        """
                        UPDATE resources
                        SET name = ?, group_name = ?, url = ?, enabled = ?, timeout_ms = ?,
                            soft_failure_patterns = ?
                        WHERE id = ?
                        """,
                        values,
                    )
                else:
                    conn.execute(
                        """
                        INSERT INTO resources
                        (name, group_name, url, enabled, timeout_ms, soft_failure_patterns, id)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        values,
                    )
                    inserted.append(resource.id)

            configured = {resource.id for resource in resources}
            for stale_id in existing - configured:
                conn.execute("UPDATE resources SET enabled = 0 WHERE id = ?", (stale_id,))
            conn.commit()
        return inserted
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to sync resources: {e}")


def list_resources(
    conn: sqlite3.Connection,
    enabled_only: bool = False,
    group: str | None = None,
) -> list[MonitoredResource]:
    """List resources ordered by id, optionally filtered.

    Raises:
        DatabaseError: If the query fails.
    """
    query = "SELECT * FROM resources WHERE 1 = 1"
    params: list = []
    if enabled_only:
        query += " AND enabled = 1"
    if group is not None:
        query += " AND group_name = ?"
        params.append(group)
    query += " ORDER BY id"

    try:
        with _db_lock:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_resource(row) for row in rows]
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to list resources: {e}")


def list_enabled_resources(conn: sqlite3.Connection) -> list[MonitoredResource]:
    return list_resources(conn, enabled_only=True)


def get_resource(conn: sqlite3.Connection, resource_id: str) -> MonitoredResource | None:
    """Get a resource by id, or None if unknown.

    Raises:
        DatabaseError: If the query fails.
    """
    try:
        with _db_lock:
            row = conn.execute("SELECT * FROM resources WHERE id = ?", (resource_id,)).fetchone()
        return _row_to_resource(row) if row is not None else None
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get resource {resource_id}: {e}")


def update_resource_status(
    conn: sqlite3.Connection,
    resource_id: str,
    status_label: str,
    checked_at: datetime,
) -> None:
    """Store the latest derived status label of a resource.

    Raises:
        DatabaseError: If the update fails.
    """
    try:
        with _db_lock:
            conn.execute(
                "UPDATE resources SET current_status = ?, last_checked_at = ? WHERE id = ?",
                (status_label, to_timestamp(checked_at), resource_id),
            )
            conn.commit()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to update status of {resource_id}: {e}")


def update_resource_audit_status(
    conn: sqlite3.Connection,
    resource_id: str,
    audit_status: str,
    audit_error: str | None = None,
) -> None:
    """Store the audit state shown for a resource. The error is replaced, not merged.

    Raises:
        DatabaseError: If the update fails.
    """
    try:
        with _db_lock:
            conn.execute(
                "UPDATE resources SET audit_status = ?, audit_error = ? WHERE id = ?",
                (audit_status, audit_error, resource_id),
            )
            conn.commit()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to update audit status of {resource_id}: {e}")


# =============================================================================
# CHECK HISTORY
# =============================================================================


def _row_to_check(row: sqlite3.Row) -> CheckResult:
    return CheckResult(
        resource_id=row["resource_id"],
        url=row["url"],
        status_code=row["status_code"],
        response_time_ms=row["response_time_ms"],
        success=bool(row["success"]),
        status_label=row["status_label"],
        error_kind=row["error_kind"],
        error_message=row["error_message"],
        checked_at=datetime.fromisoformat(row["checked_at"]),
    )


def insert_check(conn: sqlite3.Connection, result: CheckResult) -> None:
    """Append a check result to the history.

    Thread-safe: acquires global lock before database access.

    Raises:
        DatabaseError: If the insert fails.
    """
    try:
        with _db_lock:
            conn.execute(
                """
                INSERT INTO checks
                (resource_id, url, status_code, response_time_ms, success, status_label,
                 error_kind, error_message, checked_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    result.resource_id,
                    result.url,
                    result.status_code,
                    result.response_time_ms,
                    1 if result.success else 0,
                    result.status_label,
                    result.error_kind,
                    result.error_message,
                    to_timestamp(result.checked_at),
                ),
            )
            conn.commit()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to insert check result: {e}")


def get_checks(
    conn: sqlite3.Connection,
    resource_id: str,
    since: datetime,
    until: datetime | None = None,
) -> list[CheckResult]:
    """Get checks for a resource in [since, until), oldest first.

    Raises:
        DatabaseError: If the query fails.
    """
    query = "SELECT * FROM checks WHERE resource_id = ? AND checked_at >= ?"
    params: list = [resource_id, to_timestamp(since)]
    if until is not None:
        query += " AND checked_at < ?"
        params.append(to_timestamp(until))
    query += " ORDER BY checked_at ASC, id ASC"

    try:
        with _db_lock:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_check(row) for row in rows]
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get checks for {resource_id}: {e}")


def cleanup_old_checks(conn: sqlite3.Connection, retention_days: int, now: datetime | None = None) -> int:
    """Delete checks older than the retention period.

    Returns:
        Number of deleted records.

    Raises:
        DatabaseError: If the cleanup fails.
    """
    try:
        cutoff = to_timestamp((now or datetime.now(UTC)) - timedelta(days=retention_days))

        with _db_lock:
            cursor = conn.execute("DELETE FROM checks WHERE checked_at < ?", (cutoff,))
            deleted = cursor.rowcount
            conn.commit()

        return deleted

    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to cleanup old checks: {e}")


# =============================================================================
# INCIDENTS
# =============================================================================


def _row_to_incident(row: sqlite3.Row) -> Incident:
    return Incident(
        id=row["id"],
        resource_id=row["resource_id"],
        kind=row["kind"],
        message=row["message"],
        started_at=datetime.fromisoformat(row["started_at"]),
        ended_at=_from_timestamp(row["ended_at"]),
        probable_cause=row["probable_cause"],
    )


def open_incident(
    conn: sqlite3.Connection,
    resource_id: str,
    kind: str,
    message: str,
    started_at: datetime,
    probable_cause: str | None = None,
) -> Incident | None:
    """Open a new incident for a resource.

    Returns:
        The new incident, or None if the resource already has an open incident.

    Raises:
        DatabaseError: If the insert fails.
    """
    try:
        with _db_lock:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO incidents
                (resource_id, kind, message, probable_cause, started_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (resource_id, kind, message, probable_cause, to_timestamp(started_at)),
            )
            conn.commit()
            if cursor.rowcount != 1:
                return None
            incident_id = cursor.lastrowid
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to open incident for {resource_id}: {e}")

    return Incident(
        id=incident_id,
        resource_id=resource_id,
        kind=kind,
        message=message,
        started_at=started_at,
        probable_cause=probable_cause,
    )


def close_incident(conn: sqlite3.Connection, incident_id: int, ended_at: datetime) -> bool:
    """Close an open incident.

    Returns:
        True if an open incident was closed, False if it was already closed or unknown.

    Raises:
        DatabaseError: If the update fails.
    """
    try:
        with _db_lock:
            cursor = conn.execute(
                "UPDATE incidents SET ended_at = ? WHERE id = ? AND ended_at IS NULL",
                (to_timestamp(ended_at), incident_id),
            )
            conn.commit()
            return cursor.rowcount == 1
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to close incident {incident_id}: {e}")


def get_open_incident(conn: sqlite3.Connection, resource_id: str) -> Incident | None:
    """Get the open incident of a resource, if any.

    Raises:
        DatabaseError: If the query fails.
    """
    try:
        with _db_lock:
            row = conn.execute(
                "SELECT * FROM incidents WHERE resource_id = ? AND ended_at IS NULL",
                (resource_id,),
            ).fetchone()
        return _row_to_incident(row) if row is not None else None
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get open incident for {resource_id}: {e}")


def load_open_incidents(conn: sqlite3.Connection) -> list[Incident]:
    return get_incidents(conn, open_only=True)


def get_incidents(
    conn: sqlite3.Connection,
    resource_id: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    open_only: bool = False,
) -> list[Incident]:
    """Query incidents, newest first.

    Args:
        conn: Database connection.
        resource_id: Restrict to one resource.
        since: Only incidents started at or after this time.
        until: Only incidents started before this time.
        open_only: Only incidents that have not ended.

    Raises:
        DatabaseError: If the query fails.
    """
    query = "SELECT * FROM incidents WHERE 1 = 1"
    params: list = []
    if resource_id is not None:
        query += " AND resource_id = ?"
        params.append(resource_id)
    if since is not None:
        query += " AND started_at >= ?"
        params.append(to_timestamp(since))
    if until is not None:
        query += " AND started_at < ?"
        params.append(to_timestamp(until))
    if open_only:
        query += " AND ended_at IS NULL"
    query += " ORDER BY started_at DESC, id DESC"

    try:
        with _db_lock:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_incident(row) for row in rows]
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get incidents: {e}")


# =============================================================================
# AUDIT JOBS
# =============================================================================


def _row_to_job(row: sqlite3.Row) -> AuditJob:
    return AuditJob(
        id=row["id"],
        resource_id=row["resource_id"],
        url=row["url"],
        status=row["status"],
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        scheduled_for=datetime.fromisoformat(row["scheduled_for"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        last_error=row["last_error"],
        started_at=_from_timestamp(row["started_at"]),
        finished_at=_from_timestamp(row["finished_at"]),
    )


def create_audit_job(
    conn: sqlite3.Connection,
    resource_id: str,
    url: str,
    max_attempts: int,
    now: datetime,
) -> AuditJob | None:
    """Insert a pending job unless the resource already has one pending or running.

    Returns:
        The created job, or None if an equivalent job is already queued.

    Raises:
        DatabaseError: If the insert fails.
    """
    stamp = to_timestamp(now)
    try:
        with _db_lock:
            live = conn.execute(
                "SELECT id FROM audit_jobs WHERE resource_id = ? AND status IN (?, ?) LIMIT 1",
                (resource_id, JOB_PENDING, JOB_RUNNING),
            ).fetchone()
            if live is not None:
                return None
            cursor = conn.execute(
                """
                INSERT INTO audit_jobs
                (resource_id, url, status, attempts, max_attempts, scheduled_for, created_at)
                VALUES (?, ?, ?, 0, ?, ?, ?)
                """,
                (resource_id, url, JOB_PENDING, max_attempts, stamp, stamp),
            )
            conn.commit()
            job_id = cursor.lastrowid
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to create audit job for {resource_id}: {e}")

    return AuditJob(
        id=job_id,
        resource_id=resource_id,
        url=url,
        status=JOB_PENDING,
        attempts=0,
        max_attempts=max_attempts,
        scheduled_for=now,
        created_at=now,
    )


def get_due_jobs(conn: sqlite3.Connection, now: datetime, limit: int) -> list[AuditJob]:
    """Get claimable jobs whose scheduled time has passed, oldest first.

    Raises:
        DatabaseError: If the query fails.
    """
    placeholders = ", ".join("?" for _ in CLAIMABLE_JOB_STATUSES)
    try:
        with _db_lock:
            rows = conn.execute(
                f"""
                SELECT * FROM audit_jobs
                WHERE status IN ({placeholders}) AND scheduled_for <= ?
                ORDER BY created_at ASC, id ASC
                LIMIT ?
                """,
                (*CLAIMABLE_JOB_STATUSES, to_timestamp(now), limit),
            ).fetchall()
        return [_row_to_job(row) for row in rows]
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get due audit jobs: {e}")


def claim_job(conn: sqlite3.Connection, job_id: int, now: datetime) -> bool:
    """Atomically move a claimable job to running.

    Returns:
        True if this caller owns the job now, False if another worker took it.

    Raises:
        DatabaseError: If the update fails.
    """
    placeholders = ", ".join("?" for _ in CLAIMABLE_JOB_STATUSES)
    try:
        with _db_lock:
            cursor = conn.execute(
                f"""
                UPDATE audit_jobs SET status = ?, started_at = ?
                WHERE id = ? AND status IN ({placeholders})
                """,
                (JOB_RUNNING, to_timestamp(now), job_id, *CLAIMABLE_JOB_STATUSES),
            )
            conn.commit()
            return cursor.rowcount == 1
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to claim audit job {job_id}: {e}")


def _update_job(conn: sqlite3.Connection, job_id: int, **columns: object) -> None:
    assignments = ", ".join(f"{name} = ?" for name in columns)
    values = [to_timestamp(v) if isinstance(v, datetime) else v for v in columns.values()]
    try:
        with _db_lock:
            conn.execute(f"UPDATE audit_jobs SET {assignments} WHERE id = ?", (*values, job_id))
            conn.commit()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to update audit job {job_id}: {e}")


def mark_job_succeeded(conn: sqlite3.Connection, job_id: int, now: datetime) -> None:
    _update_job(conn, job_id, status=JOB_SUCCESS, last_error=None, finished_at=now)


def mark_job_retry(
    conn: sqlite3.Connection,
    job_id: int,
    attempts: int,
    scheduled_for: datetime,
    error: str,
) -> None:
    _update_job(
        conn,
        job_id,
        status=JOB_PENDING,
        attempts=attempts,
        scheduled_for=scheduled_for,
        last_error=error,
        started_at=None,
    )


def mark_job_failed(conn: sqlite3.Connection, job_id: int, attempts: int, error: str, now: datetime) -> None:
    _update_job(conn, job_id, status=JOB_FAILED, attempts=attempts, last_error=error, finished_at=now)


def mark_job_quota_blocked(
    conn: sqlite3.Connection,
    job_id: int,
    attempts: int,
    scheduled_for: datetime,
    error: str,
) -> None:
    _update_job(
        conn,
        job_id,
        status=JOB_QUOTA_BLOCKED,
        attempts=attempts,
        scheduled_for=scheduled_for,
        last_error=error,
        started_at=None,
    )


def get_job(conn: sqlite3.Connection, job_id: int) -> AuditJob | None:
    """Get an audit job by id.

    Raises:
        DatabaseError: If the query fails.
    """
    try:
        with _db_lock:
            row = conn.execute("SELECT * FROM audit_jobs WHERE id = ?", (job_id,)).fetchone()
        return _row_to_job(row) if row is not None else None
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get audit job {job_id}: {e}")


def list_jobs(
    conn: sqlite3.Connection,
    resource_id: str | None = None,
    status: str | None = None,
) -> list[AuditJob]:
    """List audit jobs, oldest first.

    Raises:
        DatabaseError: If the query fails.
    """
    query = "SELECT * FROM audit_jobs WHERE 1 = 1"
    params: list = []
    if resource_id is not None:
        query += " AND resource_id = ?"
        params.append(resource_id)
    if status is not None:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY created_at ASC, id ASC"

    try:
        with _db_lock:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_job(row) for row in rows]
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to list audit jobs: {e}")


# =============================================================================
# AUDIT RECORDS
# =============================================================================


def _row_to_audit(row: sqlite3.Row) -> AuditRecord:
    return AuditRecord(
        resource_id=row["resource_id"],
        audit_date=date.fromisoformat(row["audit_date"]),
        success=bool(row["success"]),
        scores=AuditScores(
            performance=row["performance"],
            accessibility=row["accessibility"],
            best_practices=row["best_practices"],
            seo=row["seo"],
        ),
        error=row["error"],
        audited_at=datetime.fromisoformat(row["audited_at"]),
    )


def save_audit_record(conn: sqlite3.Connection, record: AuditRecord) -> None:
    """Store an audit record. A same-day record for the resource is overwritten.

    Raises:
        DatabaseError: If the upsert fails.
    """
    audited_at = record.audited_at or datetime.now(UTC)
    scores = record.scores
    try:
        with _db_lock:
            conn.execute(
                """
                INSERT INTO audits
                (resource_id, audit_date, success, performance, accessibility, best_practices, seo,
                 error, audited_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(resource_id, audit_date) DO UPDATE SET
                    success = excluded.success,
                    performance = excluded.performance,
                    accessibility = excluded.accessibility,
                    best_practices = excluded.best_practices,
                    seo = excluded.seo,
                    error = excluded.error,
                    audited_at = excluded.audited_at
                """,
                (
                    record.resource_id,
                    record.audit_date.isoformat(),
                    1 if record.success else 0,
                    scores.performance,
                    scores.accessibility,
                    scores.best_practices,
                    scores.seo,
                    record.error,
                    to_timestamp(audited_at),
                ),
            )
            conn.commit()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to save audit record for {record.resource_id}: {e}")


def get_audit_records(
    conn: sqlite3.Connection,
    resource_id: str,
    since: date | None = None,
    until: date | None = None,
) -> list[AuditRecord]:
    """Get audit records of a resource for dates in [since, until), oldest first.

    Raises:
        DatabaseError: If the query fails.
    """
    query = "SELECT * FROM audits WHERE resource_id = ?"
    params: list = [resource_id]
    if since is not None:
        query += " AND audit_date >= ?"
        params.append(since.isoformat())
    if until is not None:
        query += " AND audit_date < ?"
        params.append(until.isoformat())
    query += " ORDER BY audit_date ASC"

    try:
        with _db_lock:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_audit(row) for row in rows]
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get audit records for {resource_id}: {e}")


def get_latest_audit(
    conn: sqlite3.Connection,
    resource_id: str,
    before: date | None = None,
) -> AuditRecord | None:
    """Get the most recent successful audit record, optionally strictly before a date.

    Raises:
        DatabaseError: If the query fails.
    """
    query = "SELECT * FROM audits WHERE resource_id = ? AND success = 1"
    params: list = [resource_id]
    if before is not None:
        query += " AND audit_date < ?"
        params.append(before.isoformat())
    query += " ORDER BY audit_date DESC LIMIT 1"

    try:
        with _db_lock:
            row = conn.execute(query, params).fetchone()
        return _row_to_audit(row) if row is not None else None
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get latest audit for {resource_id}: {e}")


def cleanup_old_audits(conn: sqlite3.Connection, retention_days: int, now: datetime | None = None) -> int:
    """Delete audit records older than the retention period.

    Returns:
        Number of deleted records.

    Raises:
        DatabaseError: If the cleanup fails.
    """
    try:
        cutoff = ((now or datetime.now(UTC)) - timedelta(days=retention_days)).date().isoformat()

        with _db_lock:
            cursor = conn.execute("DELETE FROM audits WHERE audit_date < ?", (cutoff,))
            deleted = cursor.rowcount
            conn.commit()

        if deleted:
            logger.debug("Deleted %d audit records older than %s", deleted, cutoff)
        return deleted

    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to cleanup old audits: {e}")
