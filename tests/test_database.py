"""Tests for the database module."""

import sqlite3
from datetime import UTC, date, datetime, timedelta
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest

from pagewatch.config import ResourceConfig
from pagewatch.database import (
    DatabaseError,
    claim_job,
    cleanup_old_audits,
    cleanup_old_checks,
    close_incident,
    create_audit_job,
    get_audit_records,
    get_checks,
    get_due_jobs,
    get_incidents,
    get_job,
    get_latest_audit,
    get_open_incident,
    get_resource,
    init_db,
    insert_check,
    list_enabled_resources,
    list_resources,
    load_open_incidents,
    mark_job_quota_blocked,
    open_incident,
    save_audit_record,
    sync_resources,
    to_timestamp,
    update_resource_audit_status,
    update_resource_status,
)
from pagewatch.models import (
    AUDIT_NONE,
    ERROR_TIMEOUT,
    JOB_FAILED,
    JOB_PENDING,
    JOB_QUOTA_BLOCKED,
    JOB_RUNNING,
    STATUS_OFFLINE,
    STATUS_ONLINE,
    AuditRecord,
    AuditScores,
    CheckResult,
)

T0 = datetime(2026, 3, 2, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    """Create a temporary database path."""
    return str(tmp_path / "test.db")


@pytest.fixture
def db_conn(db_path: str) -> sqlite3.Connection:
    """Create a database connection with initialized tables."""
    conn = init_db(db_path)
    yield conn
    conn.close()


def make_check(resource_id: str = "home", at: datetime = T0, success: bool = True) -> CheckResult:
    return CheckResult(
        resource_id=resource_id,
        url="https://example.com/",
        status_code=200 if success else 503,
        response_time_ms=150,
        success=success,
        status_label=STATUS_ONLINE if success else STATUS_OFFLINE,
        error_kind=None,
        error_message=None,
        checked_at=at,
    )


def make_audit(resource_id: str = "home", day: date = date(2026, 3, 2), performance: int = 90, success: bool = True) -> AuditRecord:
    return AuditRecord(
        resource_id=resource_id,
        audit_date=day,
        success=success,
        scores=AuditScores(performance=performance) if success else AuditScores(),
        error=None if success else "Lighthouse error",
        audited_at=datetime(day.year, day.month, day.day, 6, 0, tzinfo=UTC),
    )


class TestTimestamps:
    """Tests for to_timestamp."""

    def test_fixed_width(self) -> None:
        """Whole seconds still carry microseconds so strings sort chronologically."""
        assert to_timestamp(T0) == "2026-03-02T12:00:00.000000+00:00"

    def test_naive_is_utc(self) -> None:
        assert to_timestamp(datetime(2026, 3, 2, 12, 0)) == to_timestamp(T0)

    def test_converts_to_utc(self) -> None:
        local = datetime(2026, 3, 2, 9, 0, tzinfo=ZoneInfo("America/Sao_Paulo"))
        assert to_timestamp(local) == to_timestamp(T0)


class TestInitDb:
    """Tests for init_db function."""

    def test_creates_database_file(self, db_path: str) -> None:
        """Database file is created at specified path."""
        conn = init_db(db_path)
        conn.close()
        assert Path(db_path).exists()

    def test_creates_parent_directories(self, tmp_path: Path) -> None:
        """Parent directories are created if they don't exist."""
        nested_path = str(tmp_path / "nested" / "dir" / "test.db")
        conn = init_db(nested_path)
        conn.close()
        assert Path(nested_path).exists()

    def test_in_memory(self) -> None:
        conn = init_db(":memory:")
        assert list_resources(conn) == []
        conn.close()

    def test_creates_tables(self, db_conn: sqlite3.Connection) -> None:
        cursor = db_conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        tables = {row[0] for row in cursor.fetchall()}
        assert {"resources", "checks", "incidents", "audit_jobs", "audits"} <= tables

    def test_idempotent(self, db_path: str) -> None:
        """Initializing twice keeps existing data."""
        conn = init_db(db_path)
        sync_resources(conn, [ResourceConfig(id="home", name="Home", url="https://example.com/")])
        conn.close()

        conn = init_db(db_path)
        assert get_resource(conn, "home") is not None
        conn.close()

    def test_unwritable_path(self, tmp_path: Path) -> None:
        blocker = tmp_path / "file"
        blocker.write_text("x")
        with pytest.raises(DatabaseError):
            init_db(str(blocker / "sub" / "test.db"))


class TestResources:
    """Tests for resource sync and status updates."""

    def test_sync_inserts(self, db_conn: sqlite3.Connection) -> None:
        inserted = sync_resources(
            db_conn,
            [
                ResourceConfig(
                    id="home",
                    name="Home",
                    url="https://example.com/",
                    group="acme",
                    timeout_ms=5000,
                    soft_failure_patterns=("Sold out",),
                ),
                ResourceConfig(id="shop", name="Shop", url="https://example.com/shop"),
            ],
        )

        assert inserted == ["home", "shop"]
        home = get_resource(db_conn, "home")
        assert home.group == "acme"
        assert home.timeout_ms == 5000
        assert home.soft_failure_patterns == ("Sold out",)
        assert home.current_status is None
        assert home.audit_status == AUDIT_NONE

    def test_sync_updates_and_keeps_status(self, db_conn: sqlite3.Connection) -> None:
        """Re-syncing changes config fields but not the recorded status."""
        sync_resources(db_conn, [ResourceConfig(id="home", name="Home", url="https://example.com/")])
        update_resource_status(db_conn, "home", STATUS_OFFLINE, T0)

        inserted = sync_resources(db_conn, [ResourceConfig(id="home", name="Homepage", url="https://example.org/")])

        assert inserted == []
        home = get_resource(db_conn, "home")
        assert home.name == "Homepage"
        assert home.url == "https://example.org/"
        assert home.current_status == STATUS_OFFLINE
        assert home.last_checked_at == T0

    def test_sync_disables_removed(self, db_conn: sqlite3.Connection) -> None:
        """Resources dropped from the config are disabled, not deleted."""
        sync_resources(
            db_conn,
            [
                ResourceConfig(id="home", name="Home", url="https://example.com/"),
                ResourceConfig(id="shop", name="Shop", url="https://example.com/shop"),
            ],
        )
        sync_resources(db_conn, [ResourceConfig(id="home", name="Home", url="https://example.com/")])

        assert get_resource(db_conn, "shop").enabled is False
        assert [r.id for r in list_enabled_resources(db_conn)] == ["home"]
        assert [r.id for r in list_resources(db_conn)] == ["home", "shop"]

    def test_list_by_group(self, db_conn: sqlite3.Connection) -> None:
        sync_resources(
            db_conn,
            [
                ResourceConfig(id="a", name="A", url="https://a.example.com/", group="one"),
                ResourceConfig(id="b", name="B", url="https://b.example.com/", group="two"),
            ],
        )
        assert [r.id for r in list_resources(db_conn, group="two")] == ["b"]

    def test_unknown_resource(self, db_conn: sqlite3.Connection) -> None:
        assert get_resource(db_conn, "missing") is None

    def test_audit_status_replaces_error(self, db_conn: sqlite3.Connection) -> None:
        sync_resources(db_conn, [ResourceConfig(id="home", name="Home", url="https://example.com/")])
        update_resource_audit_status(db_conn, "home", JOB_FAILED, "boom")
        update_resource_audit_status(db_conn, "home", JOB_PENDING)

        home = get_resource(db_conn, "home")
        assert home.audit_status == JOB_PENDING
        assert home.audit_error is None


class TestChecks:
    """Tests for check history."""

    def test_insert_and_read(self, db_conn: sqlite3.Connection) -> None:
        insert_check(db_conn, make_check())

        checks = get_checks(db_conn, "home", T0 - timedelta(hours=1))
        assert len(checks) == 1
        assert checks[0] == make_check()

    def test_half_open_range(self, db_conn: sqlite3.Connection) -> None:
        """since is inclusive, until exclusive, results oldest first."""
        for hours in (0, 1, 2, 3):
            insert_check(db_conn, make_check(at=T0 + timedelta(hours=hours)))

        checks = get_checks(db_conn, "home", T0 + timedelta(hours=1), T0 + timedelta(hours=3))
        assert [c.checked_at for c in checks] == [T0 + timedelta(hours=1), T0 + timedelta(hours=2)]

    def test_filters_by_resource(self, db_conn: sqlite3.Connection) -> None:
        insert_check(db_conn, make_check("home"))
        insert_check(db_conn, make_check("shop"))
        assert len(get_checks(db_conn, "shop", T0 - timedelta(days=1))) == 1

    def test_cleanup(self, db_conn: sqlite3.Connection) -> None:
        """Only checks older than the retention period are removed."""
        insert_check(db_conn, make_check(at=T0 - timedelta(days=31)))
        insert_check(db_conn, make_check(at=T0 - timedelta(days=29)))

        assert cleanup_old_checks(db_conn, 30, now=T0) == 1
        assert len(get_checks(db_conn, "home", T0 - timedelta(days=60))) == 1


class TestIncidents:
    """Tests for incident storage."""

    def test_open_and_close(self, db_conn: sqlite3.Connection) -> None:
        incident = open_incident(db_conn, "home", ERROR_TIMEOUT, "Request timeout on x", T0, "Server overloaded")

        assert incident.is_open
        assert get_open_incident(db_conn, "home").id == incident.id
        assert close_incident(db_conn, incident.id, T0 + timedelta(hours=2)) is True

        stored = get_incidents(db_conn, resource_id="home")[0]
        assert stored.duration == timedelta(hours=2)
        assert stored.probable_cause == "Server overloaded"
        assert get_open_incident(db_conn, "home") is None

    def test_one_open_per_resource(self, db_conn: sqlite3.Connection) -> None:
        """A second open incident for the same resource is refused."""
        first = open_incident(db_conn, "home", ERROR_TIMEOUT, "first", T0)
        assert open_incident(db_conn, "home", ERROR_TIMEOUT, "second", T0 + timedelta(minutes=1)) is None
        assert open_incident(db_conn, "shop", ERROR_TIMEOUT, "other", T0) is not None

        close_incident(db_conn, first.id, T0 + timedelta(hours=1))
        assert open_incident(db_conn, "home", ERROR_TIMEOUT, "third", T0 + timedelta(hours=2)) is not None

    def test_close_twice(self, db_conn: sqlite3.Connection) -> None:
        incident = open_incident(db_conn, "home", ERROR_TIMEOUT, "x", T0)
        close_incident(db_conn, incident.id, T0 + timedelta(hours=1))
        assert close_incident(db_conn, incident.id, T0 + timedelta(hours=2)) is False
        assert get_incidents(db_conn)[0].ended_at == T0 + timedelta(hours=1)

    def test_query_filters(self, db_conn: sqlite3.Connection) -> None:
        """Incidents come back newest first and can be filtered by time and state."""
        old = open_incident(db_conn, "home", ERROR_TIMEOUT, "old", T0 - timedelta(days=10))
        close_incident(db_conn, old.id, T0 - timedelta(days=9))
        open_incident(db_conn, "home", ERROR_TIMEOUT, "new", T0)
        open_incident(db_conn, "shop", ERROR_TIMEOUT, "shop", T0 - timedelta(days=1))

        assert [i.message for i in get_incidents(db_conn)] == ["new", "shop", "old"]
        assert [i.message for i in get_incidents(db_conn, since=T0 - timedelta(days=7))] == ["new", "shop"]
        assert [i.message for i in get_incidents(db_conn, until=T0)] == ["shop", "old"]
        assert [i.message for i in load_open_incidents(db_conn)] == ["new", "shop"]


class TestAuditJobs:
    """Tests for audit job storage."""

    def test_create_dedupes_live_jobs(self, db_conn: sqlite3.Connection) -> None:
        job = create_audit_job(db_conn, "home", "https://example.com/", 4, T0)

        assert job.status == JOB_PENDING
        assert create_audit_job(db_conn, "home", "https://example.com/", 4, T0) is None
        assert create_audit_job(db_conn, "shop", "https://example.com/shop", 4, T0) is not None

    def test_quota_blocked_does_not_block_new_job(self, db_conn: sqlite3.Connection) -> None:
        """Only pending and running jobs count as already queued."""
        job = create_audit_job(db_conn, "home", "https://example.com/", 4, T0)
        mark_job_quota_blocked(db_conn, job.id, 1, T0 + timedelta(hours=6), "quota")
        assert create_audit_job(db_conn, "home", "https://example.com/", 4, T0) is not None

    def test_due_jobs(self, db_conn: sqlite3.Connection) -> None:
        """Due jobs are claimable ones scheduled at or before now, oldest first, up to limit."""
        first = create_audit_job(db_conn, "a", "https://a.example.com/", 4, T0)
        second = create_audit_job(db_conn, "b", "https://b.example.com/", 4, T0 + timedelta(seconds=1))
        create_audit_job(db_conn, "c", "https://c.example.com/", 4, T0 + timedelta(hours=1))
        blocked = create_audit_job(db_conn, "d", "https://d.example.com/", 4, T0 + timedelta(seconds=2))
        mark_job_quota_blocked(db_conn, blocked.id, 1, T0 + timedelta(minutes=1), "quota")

        now = T0 + timedelta(minutes=5)
        assert [j.id for j in get_due_jobs(db_conn, now, 10)] == [first.id, second.id, blocked.id]
        assert [j.id for j in get_due_jobs(db_conn, now, 1)] == [first.id]

    def test_claim_is_exclusive(self, db_conn: sqlite3.Connection) -> None:
        """Only the first claim of a job succeeds."""
        job = create_audit_job(db_conn, "home", "https://example.com/", 4, T0)

        assert claim_job(db_conn, job.id, T0) is True
        assert claim_job(db_conn, job.id, T0) is False

        stored = get_job(db_conn, job.id)
        assert stored.status == JOB_RUNNING
        assert stored.started_at == T0
        assert get_due_jobs(db_conn, T0 + timedelta(hours=1), 10) == []

    def test_claim_quota_blocked(self, db_conn: sqlite3.Connection) -> None:
        job = create_audit_job(db_conn, "home", "https://example.com/", 4, T0)
        mark_job_quota_blocked(db_conn, job.id, 1, T0, "quota")

        assert claim_job(db_conn, job.id, T0) is True
        assert get_job(db_conn, job.id).status == JOB_RUNNING

    def test_quota_block_fields(self, db_conn: sqlite3.Connection) -> None:
        job = create_audit_job(db_conn, "home", "https://example.com/", 4, T0)
        claim_job(db_conn, job.id, T0)
        mark_job_quota_blocked(db_conn, job.id, 1, T0 + timedelta(hours=6), "429")

        stored = get_job(db_conn, job.id)
        assert stored.status == JOB_QUOTA_BLOCKED
        assert stored.attempts == 1
        assert stored.scheduled_for == T0 + timedelta(hours=6)
        assert stored.last_error == "429"
        assert stored.started_at is None


class TestAuditRecords:
    """Tests for audit record storage."""

    def test_upsert_per_day(self, db_conn: sqlite3.Connection) -> None:
        """Saving twice on the same day keeps one record with the latest values."""
        save_audit_record(db_conn, make_audit(performance=70))
        save_audit_record(db_conn, make_audit(performance=85))
        save_audit_record(db_conn, make_audit(day=date(2026, 3, 3), performance=60))

        records = get_audit_records(db_conn, "home")
        assert [(r.audit_date, r.scores.performance) for r in records] == [
            (date(2026, 3, 2), 85),
            (date(2026, 3, 3), 60),
        ]

    def test_date_range(self, db_conn: sqlite3.Connection) -> None:
        for day in (1, 2, 3):
            save_audit_record(db_conn, make_audit(day=date(2026, 3, day)))

        records = get_audit_records(db_conn, "home", since=date(2026, 3, 2), until=date(2026, 3, 3))
        assert [r.audit_date for r in records] == [date(2026, 3, 2)]

    def test_latest_skips_failures(self, db_conn: sqlite3.Connection) -> None:
        save_audit_record(db_conn, make_audit(day=date(2026, 3, 1), performance=77))
        save_audit_record(db_conn, make_audit(day=date(2026, 3, 2), success=False))

        assert get_latest_audit(db_conn, "home").scores.performance == 77
        assert get_latest_audit(db_conn, "home", before=date(2026, 3, 1)) is None
        assert get_latest_audit(db_conn, "shop") is None

    def test_cleanup(self, db_conn: sqlite3.Connection) -> None:
        save_audit_record(db_conn, make_audit(day=date(2026, 1, 1)))
        save_audit_record(db_conn, make_audit(day=date(2026, 3, 1)))

        assert cleanup_old_audits(db_conn, 30, now=T0) == 1
        assert [r.audit_date for r in get_audit_records(db_conn, "home")] == [date(2026, 3, 1)]
