"""Periodic drivers for uptime probing and audit job processing."""

import logging
import sqlite3
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import UTC, date, datetime, timedelta, tzinfo
from threading import Event, Lock, Thread
from zoneinfo import ZoneInfo

from .audits import AuditJobQueue, PageSpeedClient
from .config import Config, parse_time_of_day
from .database import (
    DatabaseError,
    cleanup_old_audits,
    cleanup_old_checks,
    get_audit_records,
    get_resource,
    insert_check,
    list_enabled_resources,
    update_resource_status,
)
from .incidents import OPENED, RESOLVED, IncidentTracker
from .models import AuditJob, AuditRecord, CheckResult, MonitoredResource
from .prober import probe

logger = logging.getLogger(__name__)

# Upper bound for a single Event.wait() so wall-clock jumps are noticed.
MAX_WAIT_SECONDS = 60.0


def _zone(tz: str | tzinfo) -> tzinfo:
    return ZoneInfo(tz) if isinstance(tz, str) else tz


def next_fire_time(now: datetime, check_times: Sequence[str], tz: str | tzinfo = "UTC") -> datetime:
    """Return the first configured time of day strictly after `now`.

    Times are "HH:MM" strings interpreted in `tz`. When every time today has
    passed, the earliest time tomorrow is returned. The result is timezone-aware.

    Raises:
        ValueError: If check_times is empty.
    """
    if not check_times:
        raise ValueError("check_times must not be empty")

    zone = _zone(tz)
    local_now = now.astimezone(zone) if now.tzinfo else now.replace(tzinfo=UTC).astimezone(zone)
    times = sorted(parse_time_of_day(value) for value in check_times)

    for day_offset in (0, 1):
        day = local_now.date() + timedelta(days=day_offset)
        for hour, minute in times:
            candidate = datetime(day.year, day.month, day.day, hour, minute, tzinfo=zone)
            if candidate > local_now:
                return candidate

    # Unreachable: tomorrow always has a time after now.
    raise AssertionError("no fire time found")


def _record_result(
    conn: sqlite3.Connection,
    tracker: IncidentTracker,
    result: CheckResult,
) -> str | None:
    """Persist one check result and feed it to the incident tracker.

    Storage errors are logged so one resource never blocks the others.
    """
    try:
        insert_check(conn, result)
    except DatabaseError as e:
        logger.error("Failed to store check result for %s: %s", result.resource_id, e)

    try:
        update_resource_status(conn, result.resource_id, result.status_label, result.checked_at)
    except DatabaseError as e:
        logger.error("Failed to update status of %s: %s", result.resource_id, e)

    return tracker.process(result)


def _log_result(result: CheckResult) -> None:
    if result.success:
        logger.debug("%s: %s (%s, %dms)", result.resource_id, result.status_label, result.status_code, result.response_time_ms)
    else:
        logger.info(
            "%s: %s (%s, %dms) %s",
            result.resource_id,
            result.status_label,
            result.status_code if result.status_code is not None else result.error_kind,
            result.response_time_ms,
            result.error_message or "",
        )


def probe_all(
    resources: Sequence[MonitoredResource],
    max_workers: int,
    slow_threshold_ms: int,
    probe_fn: Callable[..., CheckResult] = probe,
) -> list[CheckResult]:
    """Probe resources concurrently. A failing probe never affects the others."""
    if not resources:
        return []

    results: list[CheckResult] = []
    with ThreadPoolExecutor(max_workers=min(max_workers, len(resources))) as executor:
        futures = {executor.submit(probe_fn, resource, slow_threshold_ms): resource for resource in resources}
        for future in as_completed(futures):
            resource = futures[future]
            try:
                results.append(future.result())
            except Exception as e:
                logger.error("Failed to check %s: %s", resource.id, e)
    return results


def run_uptime_tick(
    conn: sqlite3.Connection,
    tracker: IncidentTracker,
    config: Config,
    probe_fn: Callable[..., CheckResult] = probe,
) -> dict[str, int]:
    """Probe every enabled resource once and record the results.

    Returns:
        Summary counters: resources_checked, online, failed, incidents_created,
        incidents_resolved, open_incidents, cleaned_entries and duration_ms.
    """
    start = time.monotonic()
    summary = {
        "resources_checked": 0,
        "online": 0,
        "failed": 0,
        "incidents_created": 0,
        "incidents_resolved": 0,
        "open_incidents": 0,
        "cleaned_entries": 0,
        "duration_ms": 0,
    }

    try:
        resources = list_enabled_resources(conn)
    except DatabaseError as e:
        logger.error("Failed to list resources: %s", e)
        resources = []

    if resources:
        logger.info("Checking %d resource(s)", len(resources))

    results = probe_all(resources, config.monitor.max_workers, config.monitor.slow_threshold_ms, probe_fn)
    for result in results:
        _log_result(result)
        transition = _record_result(conn, tracker, result)
        summary["resources_checked"] += 1
        if result.success:
            summary["online"] += 1
        else:
            summary["failed"] += 1
        if transition == OPENED:
            summary["incidents_created"] += 1
        elif transition == RESOLVED:
            summary["incidents_resolved"] += 1

    retention_days = config.database.retention_days
    try:
        summary["cleaned_entries"] += cleanup_old_checks(conn, retention_days)
        summary["cleaned_entries"] += cleanup_old_audits(conn, retention_days)
    except DatabaseError as e:
        logger.error("Cleanup failed: %s", e)
    if summary["cleaned_entries"]:
        logger.info("Cleaned up %d old record(s)", summary["cleaned_entries"])

    summary["open_incidents"] = tracker.open_count
    summary["duration_ms"] = int((time.monotonic() - start) * 1000)
    logger.info(
        "Uptime tick done: %d checked, %d online, %d failed, %d opened, %d resolved (%dms)",
        summary["resources_checked"],
        summary["online"],
        summary["failed"],
        summary["incidents_created"],
        summary["incidents_resolved"],
        summary["duration_ms"],
    )
    return summary


def enqueue_daily_audits(conn: sqlite3.Connection, queue: AuditJobQueue, today: date) -> int:
    """Queue an audit for each enabled resource that has no record for `today`.

    Returns:
        Number of jobs queued.
    """
    try:
        resources = list_enabled_resources(conn)
    except DatabaseError as e:
        logger.error("Failed to list resources for daily audits: %s", e)
        return 0

    due: list[MonitoredResource] = []
    for resource in resources:
        try:
            if not get_audit_records(conn, resource.id, since=today, until=today + timedelta(days=1)):
                due.append(resource)
        except DatabaseError as e:
            logger.error("Failed to read audits of %s: %s", resource.id, e)

    queued = queue.enqueue_all(due)
    logger.info("Daily audits: queued %d of %d resource(s)", queued, len(resources))
    return queued


class Scheduler:
    """Runs the uptime and audit drivers in background threads.

    The uptime driver checks immediately on start, then at each configured time
    of day (or every interval_seconds when set). The audit driver wakes every
    tick_seconds, queues the daily audits once daily_time has passed, and works
    through a small batch of due jobs.

    Example:
        scheduler = Scheduler(config, conn)
        scheduler.start()
        # ... later ...
        scheduler.stop()
    """

    def __init__(
        self,
        config: Config,
        conn: sqlite3.Connection,
        client: PageSpeedClient | None = None,
        probe_fn: Callable[..., CheckResult] = probe,
    ) -> None:
        """Initialize the scheduler.

        Args:
            config: Application configuration.
            conn: Database connection shared with the API.
            client: Audit API client; built from config.audit when omitted.
            probe_fn: Probe implementation, replaceable for tests.
        """
        self._config = config
        self._conn = conn
        self._probe_fn = probe_fn
        self._zone = ZoneInfo(config.monitor.timezone)
        self.tracker = IncidentTracker(conn)
        client = client or PageSpeedClient(
            api_key=config.audit.api_key,
            strategy=config.audit.strategy,
            timeout=config.audit.request_timeout,
        )
        self.queue = AuditJobQueue(conn, client, config.audit)

        self._stop_event = Event()
        self._threads: list[Thread] = []
        self._uptime_lock = Lock()
        self._audit_lock = Lock()
        self._last_daily_enqueue: date | None = None

    def start(self) -> None:
        """Start both drivers in background threads."""
        if self.is_running():
            logger.warning("Scheduler already running")
            return

        try:
            self.tracker.load()
        except DatabaseError as e:
            logger.error("Failed to load open incidents: %s", e)

        self._stop_event.clear()
        self._threads = [Thread(target=self._uptime_loop, daemon=True, name="uptime-loop")]
        if self._config.audit.enabled:
            self._threads.append(Thread(target=self._audit_loop, daemon=True, name="audit-loop"))
        for thread in self._threads:
            thread.start()

        monitor = self._config.monitor
        if monitor.interval_seconds is not None:
            schedule = f"every {monitor.interval_seconds}s"
        else:
            schedule = f"at {', '.join(monitor.check_times)} ({monitor.timezone})"
        logger.info("Scheduler started: uptime checks %s, audits %s", schedule,
                    "enabled" if self._config.audit.enabled else "disabled")

    def stop(self, timeout: float = 10.0) -> None:
        """Stop the drivers gracefully.

        Args:
            timeout: Maximum seconds to wait for each thread.
        """
        if not self.is_running():
            return

        logger.info("Stopping scheduler...")
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Thread %s did not stop within timeout", thread.name)
        logger.info("Scheduler stopped")

    def is_running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def uptime_tick(self) -> dict[str, int]:
        """Run one uptime tick now. Concurrent calls are serialized."""
        with self._uptime_lock:
            return run_uptime_tick(self._conn, self.tracker, self._config, self._probe_fn)

    def audit_tick(self) -> dict[str, int]:
        """Queue due daily audits, then process one batch of due jobs."""
        with self._audit_lock:
            self._maybe_enqueue_daily(datetime.now(UTC))
            return self.queue.process_due()

    def probe_now(self, resource_id: str) -> CheckResult | None:
        """Probe one resource immediately and record the result.

        Returns:
            The check result, or None if the resource is unknown.

        Raises:
            DatabaseError: If the resource cannot be looked up.
        """
        resource = get_resource(self._conn, resource_id)
        if resource is None:
            return None
        result = self._probe_fn(resource, self._config.monitor.slow_threshold_ms)
        _record_result(self._conn, self.tracker, result)
        return result

    def trigger_manual_audit(self, resource_id: str) -> AuditRecord | None:
        """Audit one resource right away, subject to the manual rate limit.

        Returns:
            The stored audit record, or None if the resource is unknown.

        Raises:
            ManualAuditRateLimited: If the resource was audited manually too recently.
            DatabaseError: If the resource or the record cannot be accessed.
        """
        resource = get_resource(self._conn, resource_id)
        if resource is None:
            return None
        return self.queue.run_manual_audit(resource)

    def enqueue_audit(self, resource_id: str) -> AuditJob | None:
        resource = get_resource(self._conn, resource_id)
        if resource is None:
            return None
        return self.queue.enqueue(resource)

    def next_uptime_run(self, now: datetime) -> datetime:
        interval = self._config.monitor.interval_seconds
        if interval is not None:
            return now + timedelta(seconds=interval)
        return next_fire_time(now, self._config.monitor.check_times, self._zone)

    def _maybe_enqueue_daily(self, now: datetime) -> None:
        local_now = now.astimezone(self._zone)
        hour, minute = parse_time_of_day(self._config.audit.daily_time)
        if (local_now.hour, local_now.minute) < (hour, minute):
            return
        today = local_now.date()
        if self._last_daily_enqueue == today:
            return
        self._last_daily_enqueue = today
        enqueue_daily_audits(self._conn, self.queue, now.date())

    def _wait_until(self, deadline: datetime) -> bool:
        """Sleep until deadline. Returns False if stop was requested."""
        while not self._stop_event.is_set():
            remaining = (deadline - datetime.now(UTC)).total_seconds()
            if remaining <= 0:
                return True
            self._stop_event.wait(timeout=min(remaining, MAX_WAIT_SECONDS))
        return False

    def _uptime_loop(self) -> None:
        logger.debug("Uptime loop started")
        self._run_safely(self.uptime_tick, "Uptime tick")
        while self._wait_until(self.next_uptime_run(datetime.now(UTC))):
            self._run_safely(self.uptime_tick, "Uptime tick")
        logger.debug("Uptime loop exited")

    def _audit_loop(self) -> None:
        logger.debug("Audit loop started")
        tick = timedelta(seconds=self._config.audit.tick_seconds)
        self._run_safely(self.audit_tick, "Audit tick")
        while self._wait_until(datetime.now(UTC) + tick):
            self._run_safely(self.audit_tick, "Audit tick")
        logger.debug("Audit loop exited")

    def _run_safely(self, func: Callable[[], object], what: str) -> None:
        try:
            func()
        except Exception:
            logger.exception("%s failed", what)
