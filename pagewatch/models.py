"""Data models for monitored resources, checks, incidents and audits."""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

# Status labels derived from a single probe, in tie-break priority order.
STATUS_SOFT_FAILURE = "SoftFailure"
STATUS_OFFLINE = "Offline"
STATUS_SLOW = "Slow"
STATUS_ONLINE = "Online"

STATUS_LABELS = (STATUS_SOFT_FAILURE, STATUS_OFFLINE, STATUS_SLOW, STATUS_ONLINE)

# Error kinds attached to failed probes.
ERROR_HTTP_404 = "HTTP_404"  # any 4xx
ERROR_HTTP_500 = "HTTP_500"  # any 5xx
ERROR_TIMEOUT = "TIMEOUT"
ERROR_SOFT_FAILURE = "SOFT_FAILURE"
ERROR_CONNECTION = "CONNECTION_ERROR"
ERROR_UNKNOWN = "UNKNOWN"

ERROR_KINDS = (
    ERROR_HTTP_404,
    ERROR_HTTP_500,
    ERROR_TIMEOUT,
    ERROR_SOFT_FAILURE,
    ERROR_CONNECTION,
    ERROR_UNKNOWN,
)

# Incident kind used for slow responses, whatever the error kind says.
INCIDENT_SLOW = "SLOW"

# Audit job lifecycle.
JOB_PENDING = "pending"
JOB_RUNNING = "running"
JOB_SUCCESS = "success"
JOB_FAILED = "failed"
JOB_QUOTA_BLOCKED = "quota_blocked"

JOB_STATUSES = (JOB_PENDING, JOB_RUNNING, JOB_SUCCESS, JOB_FAILED, JOB_QUOTA_BLOCKED)
CLAIMABLE_JOB_STATUSES = (JOB_PENDING, JOB_QUOTA_BLOCKED)
TERMINAL_JOB_STATUSES = (JOB_SUCCESS, JOB_FAILED)

# Audit status shown on a resource. Mirrors the job statuses plus "none".
AUDIT_NONE = "none"

# Score categories understood by the PageSpeed API.
CATEGORY_PERFORMANCE = "performance"
CATEGORY_ACCESSIBILITY = "accessibility"
CATEGORY_BEST_PRACTICES = "best-practices"
CATEGORY_SEO = "seo"

AUDIT_CATEGORIES = (
    CATEGORY_PERFORMANCE,
    CATEGORY_ACCESSIBILITY,
    CATEGORY_BEST_PRACTICES,
    CATEGORY_SEO,
)


@dataclass(frozen=True)
class MonitoredResource:
    """A monitored web page.

    Attributes:
        id: Opaque identifier.
        name: Display name.
        group: Owning group (client) name.
        url: Target URL probed with GET.
        enabled: Disabled resources are skipped by the scheduler.
        timeout_ms: Probe timeout in milliseconds.
        soft_failure_patterns: Extra phrases that mark a 200 page as not found.
        current_status: Last derived StatusLabel, or None if never checked.
        last_checked_at: Timestamp of the last probe, or None.
        audit_status: Audit state shown to operators ("none", "pending", ...).
        audit_error: Last audit error text, if any.
    """

    id: str
    name: str
    url: str
    group: str = "default"
    enabled: bool = True
    timeout_ms: int = 10000
    soft_failure_patterns: tuple[str, ...] = ()
    current_status: str | None = None
    last_checked_at: datetime | None = None
    audit_status: str = AUDIT_NONE
    audit_error: str | None = None


@dataclass(frozen=True)
class CheckResult:
    """Result of a single probe.

    Attributes:
        resource_id: Resource that was probed.
        url: URL that was requested.
        status_code: HTTP status code, or None if no response was received.
        response_time_ms: Elapsed time in milliseconds.
        success: True for a 2xx/3xx response that is not a soft failure.
        status_label: One of STATUS_LABELS.
        error_kind: One of ERROR_KINDS, or None for healthy responses.
        error_message: Raw error text, None when a response was received.
        checked_at: Timestamp when the probe started (UTC).
    """

    resource_id: str
    url: str
    status_code: int | None
    response_time_ms: int
    success: bool
    status_label: str
    error_kind: str | None
    error_message: str | None
    checked_at: datetime


@dataclass(frozen=True)
class Incident:
    """A continuous unhealthy period for one resource."""

    id: int
    resource_id: str
    kind: str
    message: str
    started_at: datetime
    ended_at: datetime | None = None
    probable_cause: str | None = None

    @property
    def is_open(self) -> bool:
        return self.ended_at is None

    @property
    def duration(self) -> timedelta | None:
        """Time between start and end, or None while the incident is open."""
        if self.ended_at is None:
            return None
        return self.ended_at - self.started_at


@dataclass(frozen=True)
class AuditJob:
    """Durable record of one queued audit."""

    id: int
    resource_id: str
    url: str
    status: str
    attempts: int
    max_attempts: int
    scheduled_for: datetime
    created_at: datetime
    last_error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


@dataclass(frozen=True)
class AuditScores:
    """Category scores on a 0-100 scale, None when not measured."""

    performance: int | None = None
    accessibility: int | None = None
    best_practices: int | None = None
    seo: int | None = None

    def as_dict(self) -> dict[str, int | None]:
        return {
            CATEGORY_PERFORMANCE: self.performance,
            CATEGORY_ACCESSIBILITY: self.accessibility,
            CATEGORY_BEST_PRACTICES: self.best_practices,
            CATEGORY_SEO: self.seo,
        }


@dataclass(frozen=True)
class AuditResult:
    """Outcome of one call to the audit scoring API."""

    url: str
    strategy: str
    success: bool
    scores: AuditScores | None = None
    error: str | None = None


@dataclass(frozen=True)
class AuditRecord:
    """Stored audit outcome, at most one per resource per calendar day."""

    resource_id: str
    audit_date: date
    success: bool
    scores: AuditScores = field(default_factory=AuditScores)
    error: str | None = None
    audited_at: datetime | None = None
