"""Single HTTP probe of a monitored resource and its classification."""

import http.client
import logging
import socket
import threading
import time
import urllib.error
import urllib.request
from datetime import UTC, datetime

from . import __version__
from .models import (
    ERROR_CONNECTION,
    ERROR_HTTP_404,
    ERROR_HTTP_500,
    ERROR_SOFT_FAILURE,
    ERROR_TIMEOUT,
    ERROR_UNKNOWN,
    STATUS_OFFLINE,
    STATUS_ONLINE,
    STATUS_SLOW,
    STATUS_SOFT_FAILURE,
    CheckResult,
    MonitoredResource,
)
from .softfailure import MAX_BODY_BYTES, is_soft_failure

logger = logging.getLogger(__name__)


class _Deadline:
    """Wall-clock limit for one probe.

    When the timer fires, the socket of the current connection is shut down so a
    blocked header or body read returns at once. Connecting itself is bounded by
    the socket timeout, and a connection made after expiry is shut down as soon
    as it is attached.
    """

    def __init__(self, seconds: float) -> None:
        self.expired = False
        self._sock: socket.socket | None = None
        self._lock = threading.Lock()
        self._timer = threading.Timer(seconds, self._expire)
        self._timer.daemon = True

    def __enter__(self) -> "_Deadline":
        self._timer.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self._timer.cancel()

    def attach(self, sock: socket.socket | None) -> None:
        """Track the socket of a freshly connected (or redirected) request."""
        with self._lock:
            self._sock = sock
            if self.expired:
                self._shutdown()

    def _expire(self) -> None:
        with self._lock:
            self.expired = True
            self._shutdown()

    def _shutdown(self) -> None:
        if self._sock is None:
            return
        try:
            # Plain socket shutdown, also for TLS sockets, so the SSL state is left alone.
            socket.socket.shutdown(self._sock, socket.SHUT_RDWR)
        except OSError:
            pass


def _deadline_connection(http_class: type, req: urllib.request.Request) -> type:
    deadline = getattr(req, "deadline", None)
    if deadline is None:
        return http_class

    class DeadlineConnection(http_class):
        def connect(self) -> None:
            super().connect()
            deadline.attach(self.sock)

    return DeadlineConnection


class _DeadlineHTTPHandler(urllib.request.HTTPHandler):
    def do_open(self, http_class, req, **http_conn_args):
        return super().do_open(_deadline_connection(http_class, req), req, **http_conn_args)


class _DeadlineHTTPSHandler(urllib.request.HTTPSHandler):
    def do_open(self, http_class, req, **http_conn_args):
        return super().do_open(_deadline_connection(http_class, req), req, **http_conn_args)


class _DeadlineRedirectHandler(urllib.request.HTTPRedirectHandler):
    def redirect_request(self, req, fp, code, msg, headers, newurl):
        new_req = super().redirect_request(req, fp, code, msg, headers, newurl)
        if new_req is not None:
            new_req.deadline = getattr(req, "deadline", None)
        return new_req


# Redirects (301/302/303/307/308) are followed; the final response is classified.
_opener = urllib.request.build_opener(_DeadlineHTTPHandler, _DeadlineHTTPSHandler, _DeadlineRedirectHandler)

DEFAULT_SLOW_THRESHOLD_MS = 1500

USER_AGENT = f"PageWatch/{__version__}"


def derive_status_label(
    success: bool,
    status_code: int | None,
    response_time_ms: int,
    soft_failure: bool,
    slow_threshold_ms: int = DEFAULT_SLOW_THRESHOLD_MS,
) -> str:
    """Map a probe outcome to a status label.

    Priority: SoftFailure > Offline > Slow > Online. A soft failure is never
    reported as merely slow or online.
    """
    if soft_failure:
        return STATUS_SOFT_FAILURE
    if not success or status_code is None or status_code >= 400:
        return STATUS_OFFLINE
    if response_time_ms > slow_threshold_ms:
        return STATUS_SLOW
    return STATUS_ONLINE


def derive_error_kind(status_code: int | None, soft_failure: bool = False, failure: str | None = None) -> str | None:
    """Map a probe outcome to an error kind, or None for a healthy response.

    Args:
        status_code: HTTP status, or None when no response was received.
        soft_failure: Whether the soft-failure detector fired.
        failure: Kind of network failure when status_code is None
            (ERROR_TIMEOUT or ERROR_CONNECTION); anything else maps to ERROR_UNKNOWN.
    """
    if soft_failure:
        return ERROR_SOFT_FAILURE
    if status_code is None:
        if failure in (ERROR_TIMEOUT, ERROR_CONNECTION):
            return failure
        return ERROR_UNKNOWN
    if 400 <= status_code < 500:
        return ERROR_HTTP_404
    if 500 <= status_code < 600:
        return ERROR_HTTP_500
    return None


def _classify_exception(exc: BaseException) -> tuple[str, str]:
    """Return (error kind, message) for a request that got no response."""
    reason = exc.reason if isinstance(exc, urllib.error.URLError) else exc
    if isinstance(reason, TimeoutError):
        return ERROR_TIMEOUT, "Request timeout"
    if isinstance(reason, socket.gaierror):
        return ERROR_CONNECTION, f"DNS resolution failed: {reason}"
    if isinstance(reason, ConnectionRefusedError):
        return ERROR_CONNECTION, "Connection refused"
    if isinstance(reason, OSError | http.client.HTTPException):
        return ERROR_CONNECTION, f"Connection failed: {reason}"
    if isinstance(exc, urllib.error.URLError):
        return ERROR_CONNECTION, str(exc.reason) if exc.reason else "Connection failed"
    return ERROR_UNKNOWN, str(exc) or exc.__class__.__name__


def _read_snippet(response) -> str | None:
    """Read up to MAX_BODY_BYTES of the body, or None if it cannot be read."""
    try:
        raw = response.read(MAX_BODY_BYTES)
    except (OSError, http.client.HTTPException) as e:
        logger.debug("Could not read body of %s: %s", response.geturl(), e)
        return None
    charset = response.headers.get_content_charset() or "utf-8"
    try:
        return raw.decode(charset, errors="replace")
    except LookupError:
        return raw.decode("utf-8", errors="replace")


def probe(resource: MonitoredResource, slow_threshold_ms: int = DEFAULT_SLOW_THRESHOLD_MS) -> CheckResult:
    """Perform one GET against a resource and classify the outcome.

    Never raises: every failure mode is captured in the returned CheckResult.
    The body is only read for an exact 200 response, and only its first
    MAX_BODY_BYTES bytes. A body that cannot be read is treated as not soft.

    The response time is taken when the headers arrive. The resource's
    timeout_ms is a wall-clock deadline for the whole probe, body snippet
    included; once it passes the probe is aborted and reported as TIMEOUT.

    Args:
        resource: Resource to probe.
        slow_threshold_ms: Responses slower than this are labelled Slow.
    """
    timeout = resource.timeout_ms / 1000
    start = time.monotonic()
    checked_at = datetime.now(UTC)
    request = urllib.request.Request(resource.url, method="GET", headers={"User-Agent": USER_AGENT})

    def _result(
        status_code: int | None,
        soft: bool,
        error_message: str | None,
        failure: str | None,
        elapsed_ms: int | None = None,
    ) -> CheckResult:
        if elapsed_ms is None:
            elapsed_ms = int((time.monotonic() - start) * 1000)
        success = status_code is not None and 200 <= status_code < 400 and not soft
        return CheckResult(
            resource_id=resource.id,
            url=resource.url,
            status_code=status_code,
            response_time_ms=elapsed_ms,
            success=success,
            status_label=derive_status_label(success, status_code, elapsed_ms, soft, slow_threshold_ms),
            error_kind=derive_error_kind(status_code, soft, failure),
            error_message=error_message,
            checked_at=checked_at,
        )

    def _timed_out() -> CheckResult:
        logger.debug("Probe of %s exceeded %dms", resource.url, resource.timeout_ms)
        return _result(None, False, "Request timeout", ERROR_TIMEOUT)

    with _Deadline(timeout) as deadline:
        request.deadline = deadline
        try:
            with _opener.open(request, timeout=timeout) as response:
                elapsed_ms = int((time.monotonic() - start) * 1000)
                status_code = response.status
                soft = False
                if status_code == 200:
                    snippet = _read_snippet(response)
                    if deadline.expired:
                        return _timed_out()
                    if snippet is not None:
                        soft = is_soft_failure(resource.url, snippet, resource.soft_failure_patterns)
                return _result(status_code, soft, None, None, elapsed_ms)

        except urllib.error.HTTPError as e:
            # Error statuses are classified from the code alone; the body is never read.
            elapsed_ms = int((time.monotonic() - start) * 1000)
            e.close()
            return _result(e.code, False, None, None, elapsed_ms)

        except Exception as e:
            if deadline.expired:
                return _timed_out()
            kind, message = _classify_exception(e)
            logger.debug("Probe of %s failed: %s", resource.url, message)
            return _result(None, False, message, kind)
