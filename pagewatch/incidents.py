"""Incident tracking: opens an incident when a resource turns unhealthy and
closes it when the resource is Online again.

Per resource there are two states. Healthy has no open incident, Unhealthy has
exactly one. Any label other than Online counts as unhealthy, so a Slow result
keeps an incident open.
"""

import logging
import sqlite3
import threading

from .database import DatabaseError, close_incident, get_open_incident, load_open_incidents, open_incident
from .models import (
    ERROR_CONNECTION,
    ERROR_HTTP_404,
    ERROR_HTTP_500,
    ERROR_SOFT_FAILURE,
    ERROR_TIMEOUT,
    ERROR_UNKNOWN,
    INCIDENT_SLOW,
    STATUS_ONLINE,
    STATUS_SLOW,
    STATUS_SOFT_FAILURE,
    CheckResult,
)

logger = logging.getLogger(__name__)

OPENED = "opened"
RESOLVED = "resolved"

PROBABLE_CAUSES = {
    INCIDENT_SLOW: "Server is responding slowly (load, slow backend or network latency)",
    ERROR_SOFT_FAILURE: "Page answers 200 but shows a not-found or error page",
    ERROR_HTTP_404: "Page removed, moved or access denied (client error)",
    ERROR_HTTP_500: "Server-side error in the application or its upstream",
    ERROR_TIMEOUT: "Server did not answer within the timeout",
    ERROR_CONNECTION: "Host unreachable, connection refused or DNS failure",
    ERROR_UNKNOWN: "Unclassified failure",
}


def describe_incident(result: CheckResult) -> tuple[str, str]:
    """Return (kind, message) for an unhealthy check result."""
    if result.status_label == STATUS_SLOW:
        return INCIDENT_SLOW, f"Slow response ({result.response_time_ms}ms) on {result.url}"
    if result.status_label == STATUS_SOFT_FAILURE:
        return ERROR_SOFT_FAILURE, f"Soft failure detected on {result.url}"

    kind = result.error_kind or ERROR_UNKNOWN
    if result.error_message:
        return kind, f"{result.error_message} on {result.url}"
    return kind, f"HTTP {result.status_code or 'unknown'} on {result.url}"


class IncidentTracker:
    """Keeps the open incident of every resource in step with its check results.

    The in-memory map caches the open incident of each resource. Every
    transition is decided by reading the database first, so incidents opened or
    closed by another process are picked up. Call load() once before processing
    results so a restart starts from the stored open incidents.

    Example:
        tracker = IncidentTracker(conn)
        tracker.load()
        tracker.process(result)
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = threading.Lock()
        self._open: dict[str, int] = {}  # resource_id -> incident id
        self._loaded = False

    def load(self) -> int:
        """Load open incidents from the database, replacing the in-memory map.

        Returns:
            Number of open incidents found.

        Raises:
            DatabaseError: If the incidents cannot be read.
        """
        incidents = load_open_incidents(self._conn)
        with self._lock:
            self._open = {incident.resource_id: incident.id for incident in incidents}
            self._loaded = True
        logger.info("Loaded %d open incident(s)", len(incidents))
        return len(incidents)

    def open_incident_id(self, resource_id: str) -> int | None:
        with self._lock:
            return self._open.get(resource_id)

    @property
    def open_count(self) -> int:
        with self._lock:
            return len(self._open)

    def process(self, result: CheckResult) -> str | None:
        """Apply one check result.

        Storage errors are logged and swallowed so one resource cannot abort a tick.

        Returns:
            OPENED, RESOLVED, or None when the state did not change.
        """
        if not self._loaded:
            try:
                self.load()
            except DatabaseError as e:
                logger.error("Failed to load open incidents: %s", e)
                return None

        with self._lock:
            try:
                if result.status_label != STATUS_ONLINE:
                    return self._open_if_healthy(result)
                return self._close_if_unhealthy(result)
            except DatabaseError as e:
                logger.error("Incident update failed for %s: %s", result.resource_id, e)
                return None

    def _open_if_healthy(self, result: CheckResult) -> str | None:
        # Another process may have opened or closed the incident since the map was filled.
        existing = get_open_incident(self._conn, result.resource_id)
        if existing is not None:
            self._open[result.resource_id] = existing.id
            return None
        self._open.pop(result.resource_id, None)

        kind, message = describe_incident(result)
        incident = open_incident(
            self._conn,
            result.resource_id,
            kind,
            message,
            result.checked_at,
            probable_cause=PROBABLE_CAUSES.get(kind),
        )
        if incident is None:
            # Opened by another process in between; adopt it instead of opening a second one.
            existing = get_open_incident(self._conn, result.resource_id)
            if existing is not None:
                self._open[result.resource_id] = existing.id
            return None

        self._open[result.resource_id] = incident.id
        logger.warning("Incident opened for %s: %s - %s", result.resource_id, kind, message)
        return OPENED

    def _close_if_unhealthy(self, result: CheckResult) -> str | None:
        existing = get_open_incident(self._conn, result.resource_id)
        if existing is None:
            self._open.pop(result.resource_id, None)
            return None

        closed = close_incident(self._conn, existing.id, result.checked_at)
        self._open.pop(result.resource_id, None)
        if not closed:
            return None
        logger.info("Incident resolved for %s", result.resource_id)
        return RESOLVED
