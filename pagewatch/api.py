"""HTTP API server: status, ranking, incidents and the on-demand/cron entry points."""

import hmac
import json
import logging
import sqlite3
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any
from urllib.parse import parse_qs, urlsplit

from .audits import ManualAuditRateLimited
from .config import ApiConfig
from .database import DatabaseError, get_incidents, get_resource, list_resources
from .models import AuditRecord, CheckResult, Incident, MonitoredResource
from .scheduler import Scheduler
from .scoring import Ranking, RankedResource, WindowMetrics, audit_averages, rank_resources

logger = logging.getLogger(__name__)

# Upper bound for the ranking window, in days.
MAX_RANKING_DAYS = 90

# Maximum number of incidents returned per request.
INCIDENT_LIMIT = 200


class ApiError(Exception):
    """Raised when an API operation fails."""
    pass


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


def _resource_to_dict(resource: MonitoredResource) -> dict[str, Any]:
    return {
        "id": resource.id,
        "name": resource.name,
        "group": resource.group,
        "url": resource.url,
        "enabled": resource.enabled,
        "status": resource.current_status,
        "last_checked_at": _iso(resource.last_checked_at),
        "audit_status": resource.audit_status,
        "audit_error": resource.audit_error,
    }


def _check_to_dict(result: CheckResult) -> dict[str, Any]:
    return {
        "resource_id": result.resource_id,
        "url": result.url,
        "status_code": result.status_code,
        "response_time_ms": result.response_time_ms,
        "success": result.success,
        "status": result.status_label,
        "error_kind": result.error_kind,
        "error": result.error_message,
        "checked_at": _iso(result.checked_at),
    }


def _incident_to_dict(incident: Incident) -> dict[str, Any]:
    duration = incident.duration
    return {
        "id": incident.id,
        "resource_id": incident.resource_id,
        "kind": incident.kind,
        "message": incident.message,
        "probable_cause": incident.probable_cause,
        "started_at": _iso(incident.started_at),
        "ended_at": _iso(incident.ended_at),
        "duration_seconds": duration.total_seconds() if duration is not None else None,
    }


def _audit_to_dict(record: AuditRecord) -> dict[str, Any]:
    return {
        "resource_id": record.resource_id,
        "date": record.audit_date.isoformat(),
        "success": record.success,
        "scores": record.scores.as_dict(),
        "error": record.error,
        "audited_at": _iso(record.audited_at),
    }


def _metrics_to_dict(metrics: WindowMetrics | None) -> dict[str, Any] | None:
    if metrics is None:
        return None
    return {
        "checks": metrics.checks,
        "uptime": metrics.uptime,
        "avg_response_time_ms": metrics.avg_response_time_ms,
        "incident_count": metrics.incident_count,
    }


def _ranked_to_dict(entry: RankedResource) -> dict[str, Any]:
    return {
        "resource_id": entry.resource_id,
        "name": entry.name,
        "group": entry.group,
        "url": entry.url,
        "status": entry.status,
        "performance": entry.performance,
        "health_score": entry.health_score,
        "current": _metrics_to_dict(entry.current),
        "previous": _metrics_to_dict(entry.previous),
        "previous_health_score": entry.previous_health_score,
        "variation": entry.variation,
    }


def _build_ranking_response(ranking: Ranking) -> dict[str, Any]:
    return {
        "period_days": ranking.period_days,
        "generated_at": _iso(ranking.generated_at),
        "ranking": [_ranked_to_dict(entry) for entry in ranking.entries],
        "groups": ranking.groups,
        "daily": [
            {
                "date": point.day.isoformat(),
                "checks": point.checks,
                "uptime": point.uptime,
                "avg_response_time_ms": point.avg_response_time_ms,
                "incident_count": point.incident_count,
            }
            for point in ranking.daily
        ],
        "incidents_by_kind": [{"kind": kind, "count": count} for kind, count in ranking.incidents_by_kind],
    }


def _build_status_response(resources: list[MonitoredResource]) -> dict[str, Any]:
    """Build the full status response with summary."""
    counts: dict[str, int] = {}
    for resource in resources:
        key = resource.current_status or "Unknown"
        counts[key] = counts.get(key, 0) + 1
    return {
        "resources": [_resource_to_dict(r) for r in resources],
        "summary": {"total": len(resources), **counts},
    }


class PageWatchHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the PageWatch API."""

    # Class-level references set by factory
    db_conn: sqlite3.Connection | None = None
    scheduler: Scheduler | None = None
    cron_secret: str | None = None  # cron endpoints are refused while unset

    def log_message(self, format: str, *args: Any) -> None:
        """Override to use Python logging instead of stderr."""
        logger.debug("API %s - %s", self.address_string(), format % args)

    def _send_json(self, code: int, data: dict[str, Any], headers: dict[str, str] | None = None) -> None:
        """Send a JSON response with the given status code."""
        body = json.dumps(data, indent=2).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        for name, value in (headers or {}).items():
            self.send_header(name, value)
        self.send_header("Connection", "close")
        self.end_headers()
        self.wfile.write(body)

    def _send_error_json(self, code: int, message: str) -> None:
        """Send a JSON error response."""
        self._send_json(code, {"error": message})

    def _parse_path(self) -> tuple[str, dict[str, list[str]]]:
        parts = urlsplit(self.path)
        path = parts.path.rstrip("/") or "/"
        return path, parse_qs(parts.query)

    def do_GET(self) -> None:
        """Handle GET requests."""
        path, query = self._parse_path()
        try:
            if path == "/health":
                self._send_json(200, {"status": "ok"})
            elif path == "/status":
                self._handle_status_all()
            elif path.startswith("/status/"):
                self._handle_status_by_id(path[len("/status/"):])
            elif path == "/ranking":
                self._handle_ranking(query)
            elif path == "/incidents":
                self._handle_incidents(query)
            elif path == "/audits":
                self._handle_audits(query)
            elif path == "/cron/uptime":
                self._handle_cron_uptime()
            elif path == "/cron/audits":
                self._handle_cron_audits()
            else:
                self._send_error_json(404, "Not found")
        except Exception as e:
            logger.exception("Error handling request: %s", e)
            self._send_error_json(500, "Internal server error")

    def do_POST(self) -> None:
        """Handle POST requests."""
        path, _ = self._parse_path()
        try:
            segments = path.strip("/").split("/")
            if len(segments) == 3 and segments[0] == "resources" and segments[1]:
                action = segments[2]
                if action == "probe":
                    self._handle_probe(segments[1])
                    return
                if action == "audit":
                    self._handle_manual_audit(segments[1])
                    return
            self._send_error_json(404, "Not found")
        except Exception as e:
            logger.exception("Error handling POST request: %s", e)
            self._send_error_json(500, "Internal server error")

    def _require_db(self) -> bool:
        if self.db_conn is None:
            self._send_error_json(503, "Database not available")
            return False
        return True

    def _require_scheduler(self) -> bool:
        if self.scheduler is None:
            self._send_error_json(503, "Scheduler not available")
            return False
        return True

    def _is_authorized_cron(self) -> bool:
        """Check the Bearer token of a cron request; sends 401/403 when refused."""
        if self.cron_secret is None:
            self._send_error_json(401, "Cron endpoints are disabled: no cron secret configured")
            return False
        auth_header = self.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            self._send_error_json(401, "Authorization required: Bearer token expected")
            return False
        if not hmac.compare_digest(auth_header[7:], self.cron_secret):
            logger.warning("Invalid cron token from %s", self.address_string())
            self._send_error_json(403, "Invalid cron token")
            return False
        return True

    def _handle_status_all(self) -> None:
        """Handle GET /status endpoint."""
        if not self._require_db():
            return
        try:
            resources = list_resources(self.db_conn, enabled_only=True)
            self._send_json(200, _build_status_response(resources))
        except DatabaseError as e:
            logger.error("Database error in /status: %s", e)
            self._send_error_json(500, "Database error")

    def _handle_status_by_id(self, resource_id: str) -> None:
        """Handle GET /status/<id> endpoint."""
        if not resource_id:
            self._send_error_json(400, "Resource id is required")
            return
        if not self._require_db():
            return
        try:
            resource = get_resource(self.db_conn, resource_id)
            if resource is None:
                self._send_error_json(404, f"Resource '{resource_id}' not found")
                return
            self._send_json(200, _resource_to_dict(resource))
        except DatabaseError as e:
            logger.error("Database error in /status/%s: %s", resource_id, e)
            self._send_error_json(500, "Database error")

    def _handle_ranking(self, query: dict[str, list[str]]) -> None:
        """Handle GET /ranking?days=N&group=G endpoint."""
        if not self._require_db():
            return
        try:
            days = int(query.get("days", ["7"])[0])
        except ValueError:
            self._send_error_json(400, "days must be an integer")
            return
        if days < 1 or days > MAX_RANKING_DAYS:
            self._send_error_json(400, f"days must be between 1 and {MAX_RANKING_DAYS}")
            return
        group = query.get("group", [None])[0] or None

        try:
            ranking = rank_resources(self.db_conn, days=days, group=group)
            self._send_json(200, _build_ranking_response(ranking))
        except DatabaseError as e:
            logger.error("Database error in /ranking: %s", e)
            self._send_error_json(500, "Database error")

    def _handle_incidents(self, query: dict[str, list[str]]) -> None:
        """Handle GET /incidents?open=1&resource=ID endpoint."""
        if not self._require_db():
            return
        open_only = query.get("open", ["0"])[0].lower() in ("1", "true", "yes")
        resource_id = query.get("resource", [None])[0] or None
        try:
            incidents = get_incidents(self.db_conn, resource_id=resource_id, open_only=open_only)
            incidents = incidents[:INCIDENT_LIMIT]
            self._send_json(
                200,
                {"incidents": [_incident_to_dict(i) for i in incidents], "count": len(incidents)},
            )
        except DatabaseError as e:
            logger.error("Database error in /incidents: %s", e)
            self._send_error_json(500, "Database error")

    def _handle_audits(self, query: dict[str, list[str]]) -> None:
        """Handle GET /audits?days=N endpoint - category averages with trend."""
        if not self._require_db():
            return
        try:
            days = int(query.get("days", ["7"])[0])
        except ValueError:
            self._send_error_json(400, "days must be an integer")
            return
        if days < 1 or days > MAX_RANKING_DAYS:
            self._send_error_json(400, f"days must be between 1 and {MAX_RANKING_DAYS}")
            return
        try:
            resource_ids = [r.id for r in list_resources(self.db_conn, enabled_only=True)]
            averages = audit_averages(self.db_conn, resource_ids, days=days)
            self._send_json(200, {"period_days": days, "averages": averages})
        except DatabaseError as e:
            logger.error("Database error in /audits: %s", e)
            self._send_error_json(500, "Database error")

    def _handle_cron_uptime(self) -> None:
        """Handle GET /cron/uptime endpoint - run one uptime tick now."""
        if not self._is_authorized_cron() or not self._require_scheduler():
            return
        summary = self.scheduler.uptime_tick()
        self._send_json(200, {"success": True, **summary})

    def _handle_cron_audits(self) -> None:
        """Handle GET /cron/audits endpoint - process one batch of due audit jobs."""
        if not self._is_authorized_cron() or not self._require_scheduler():
            return
        summary = self.scheduler.audit_tick()
        self._send_json(200, {"success": True, **summary})

    def _handle_probe(self, resource_id: str) -> None:
        """Handle POST /resources/<id>/probe endpoint."""
        if not self._require_scheduler():
            return
        try:
            result = self.scheduler.probe_now(resource_id)
        except DatabaseError as e:
            logger.error("Database error probing %s: %s", resource_id, e)
            self._send_error_json(500, "Database error")
            return
        if result is None:
            self._send_error_json(404, f"Resource '{resource_id}' not found")
            return
        self._send_json(200, _check_to_dict(result))

    def _handle_manual_audit(self, resource_id: str) -> None:
        """Handle POST /resources/<id>/audit endpoint."""
        if not self._require_scheduler():
            return
        try:
            record = self.scheduler.trigger_manual_audit(resource_id)
        except ManualAuditRateLimited as e:
            self._send_json(
                429,
                {"error": str(e), "rate_limited": True, "retry_after": e.retry_after},
                headers={"Retry-After": str(e.retry_after)},
            )
            return
        except DatabaseError as e:
            logger.error("Database error auditing %s: %s", resource_id, e)
            self._send_error_json(500, "Database error")
            return
        if record is None:
            self._send_error_json(404, f"Resource '{resource_id}' not found")
            return
        self._send_json(200, _audit_to_dict(record))


def _create_handler_class(
    db_conn: sqlite3.Connection,
    scheduler: Scheduler | None = None,
    cron_secret: str | None = None,
) -> type:
    """Create a handler class with the database connection and scheduler bound."""

    class BoundHandler(PageWatchHandler):
        pass

    BoundHandler.db_conn = db_conn
    BoundHandler.scheduler = scheduler
    BoundHandler.cron_secret = cron_secret
    return BoundHandler


class ApiServer:
    """HTTP API server running in a background thread."""

    def __init__(
        self,
        config: ApiConfig,
        db_conn: sqlite3.Connection,
        scheduler: Scheduler | None = None,
    ) -> None:
        """Initialize the API server.

        Args:
            config: API configuration.
            db_conn: Database connection for queries.
            scheduler: Scheduler serving the probe, audit and cron endpoints.
        """
        self.config = config
        self.db_conn = db_conn
        self.scheduler = scheduler
        self._server: HTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._shutdown_event = threading.Event()

    def start(self) -> None:
        """Start the API server in a background thread.

        Raises:
            ApiError: If the server fails to start.
        """
        if self._thread is not None and self._thread.is_alive():
            logger.warning("API server is already running")
            return

        try:
            handler_class = _create_handler_class(self.db_conn, self.scheduler, self.config.cron_secret)
            self._server = HTTPServer(("", self.config.port), handler_class)
            self._server.timeout = 1.0  # Allow periodic shutdown checks

            self._shutdown_event.clear()
            self._thread = threading.Thread(
                target=self._serve_forever,
                name="api-server",
                daemon=True,
            )
            self._thread.start()

            logger.info("API server started on port %d", self.config.port)
            if self.config.cron_secret is None:
                logger.warning("No cron secret configured; /cron endpoints are disabled")

        except OSError as e:
            if e.errno in (98, 48):  # EADDRINUSE (Linux=98, macOS=48)
                raise ApiError(
                    f"Port {self.config.port} is already in use. "
                    f"Another process may be using this port, or pagewatch is already running."
                )
            raise ApiError(f"Failed to start API server on port {self.config.port}: {e}")

    def _serve_forever(self) -> None:
        """Server loop that checks for shutdown."""
        while not self._shutdown_event.is_set():
            if self._server:
                self._server.handle_request()

    def stop(self) -> None:
        """Stop the API server gracefully."""
        if self._thread is None:
            return

        logger.info("Stopping API server...")
        self._shutdown_event.set()

        if self._thread.is_alive():
            self._thread.join(timeout=5.0)

        if self._server:
            self._server.server_close()

        self._server = None
        self._thread = None
        logger.info("API server stopped")

    @property
    def is_running(self) -> bool:
        """Check if the server is running."""
        return self._thread is not None and self._thread.is_alive()
