"""Rolling metrics, trends and the composite health score.

Everything here reads history on demand; nothing is cached or stored.
"""

import math
import sqlite3
from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta

from .database import get_audit_records, get_checks, get_incidents, get_latest_audit, list_resources
from .models import AUDIT_CATEGORIES, CheckResult, Incident

TREND_UP = "up"
TREND_DOWN = "down"
TREND_STABLE = "stable"

# Differences within +/- this many points count as stable.
TREND_DEAD_BAND = 2.0

# Used for resources that were never audited, so they are not penalized to zero.
NEUTRAL_PERFORMANCE = 50

WEIGHT_PERFORMANCE = 0.4
WEIGHT_UPTIME = 0.3
WEIGHT_RESPONSE_TIME = 0.2
WEIGHT_INCIDENTS = 0.1

# Response time that scores 0; incident count that scores 0.
RESPONSE_TIME_CEILING_MS = 3000
INCIDENT_CEILING = 5


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def response_time_score(avg_response_time_ms: float) -> float:
    return _clamp(100 - (avg_response_time_ms / RESPONSE_TIME_CEILING_MS) * 100)


def incident_score(incident_count: int) -> float:
    return _clamp(100 - (incident_count / INCIDENT_CEILING) * 100)


def compute_health_score(
    performance: float | None,
    uptime: float,
    avg_response_time_ms: float,
    incident_count: int,
) -> int:
    """Weighted 0-100 composite of performance, uptime, response time and incidents.

    Non-decreasing in uptime and in performance when the other inputs are fixed.
    A missing performance score counts as NEUTRAL_PERFORMANCE.
    """
    perf = NEUTRAL_PERFORMANCE if performance is None else performance
    return _round_half_up(
        perf * WEIGHT_PERFORMANCE
        + uptime * WEIGHT_UPTIME
        + response_time_score(avg_response_time_ms) * WEIGHT_RESPONSE_TIME
        + incident_score(incident_count) * WEIGHT_INCIDENTS
    )


def trend(current: float | None, previous: float | None, dead_band: float = TREND_DEAD_BAND) -> str | None:
    """Direction of change from previous to current, or None if either is missing."""
    if current is None or previous is None:
        return None
    diff = current - previous
    if diff > dead_band:
        return TREND_UP
    if diff < -dead_band:
        return TREND_DOWN
    return TREND_STABLE


@dataclass(frozen=True)
class WindowMetrics:
    """Check statistics over one time window."""

    checks: int
    uptime: float  # percent, 100.0 when there are no checks
    avg_response_time_ms: int  # mean of positive response times, 0 when none
    incident_count: int

    @property
    def has_data(self) -> bool:
        return self.checks > 0


def window_metrics(checks: Sequence[CheckResult], incident_count: int = 0) -> WindowMetrics:
    total = len(checks)
    up = sum(1 for check in checks if check.success)
    timings = [check.response_time_ms for check in checks if check.response_time_ms > 0]
    return WindowMetrics(
        checks=total,
        uptime=round(up / total * 100, 2) if total else 100.0,
        avg_response_time_ms=_round_half_up(sum(timings) / len(timings)) if timings else 0,
        incident_count=incident_count,
    )


@dataclass(frozen=True)
class RankedResource:
    """One row of the health ranking."""

    resource_id: str
    name: str
    group: str
    url: str
    status: str | None
    performance: int | None
    current: WindowMetrics
    health_score: int
    previous: WindowMetrics | None = None
    previous_health_score: int | None = None
    variation: str | None = None


@dataclass(frozen=True)
class DailyPoint:
    day: date
    checks: int
    uptime: float
    avg_response_time_ms: int
    incident_count: int


@dataclass(frozen=True)
class Ranking:
    """Health ranking of resources plus the aggregates shown next to it."""

    period_days: int
    generated_at: datetime
    entries: list[RankedResource] = field(default_factory=list)
    daily: list[DailyPoint] = field(default_factory=list)
    incidents_by_kind: list[tuple[str, int]] = field(default_factory=list)
    groups: list[str] = field(default_factory=list)


def daily_series(checks: Iterable[CheckResult], incidents: Iterable[Incident]) -> list[DailyPoint]:
    """Aggregate checks and incident starts per UTC calendar day, oldest first."""
    by_day: dict[date, list[CheckResult]] = {}
    for check in checks:
        by_day.setdefault(check.checked_at.astimezone(UTC).date(), []).append(check)
    incident_days = Counter(incident.started_at.astimezone(UTC).date() for incident in incidents)

    points = []
    for day in sorted(set(by_day) | set(incident_days)):
        metrics = window_metrics(by_day.get(day, []), incident_days.get(day, 0))
        points.append(
            DailyPoint(
                day=day,
                checks=metrics.checks,
                uptime=metrics.uptime,
                avg_response_time_ms=metrics.avg_response_time_ms,
                incident_count=metrics.incident_count,
            )
        )
    return points


def incidents_by_kind(incidents: Iterable[Incident]) -> list[tuple[str, int]]:
    """Incident counts per kind, most frequent first (ties by kind name)."""
    counts = Counter(incident.kind for incident in incidents)
    return sorted(counts.items(), key=lambda item: (-item[1], item[0]))


def rank_resources(
    conn: sqlite3.Connection,
    days: int = 7,
    group: str | None = None,
    now: datetime | None = None,
) -> Ranking:
    """Rank enabled resources by health score over the trailing window.

    The previous window has the same length and ends where the current one
    starts. It only yields a previous score when it holds checks; the latest
    audit performance is used for both windows.

    Raises:
        DatabaseError: If history cannot be read.
        ValueError: If days is not positive.
    """
    if days < 1:
        raise ValueError("days must be at least 1")

    now = now or datetime.now(UTC)
    period_start = now - timedelta(days=days)
    previous_start = now - timedelta(days=days * 2)

    enabled = list_resources(conn, enabled_only=True)
    groups = sorted({resource.group for resource in enabled})
    targets = [resource for resource in enabled if group is None or resource.group == group]

    entries: list[RankedResource] = []
    all_current_checks: list[CheckResult] = []
    all_current_incidents: list[Incident] = []

    for resource in targets:
        current_checks = get_checks(conn, resource.id, period_start, now)
        previous_checks = get_checks(conn, resource.id, previous_start, period_start)
        current_incidents = get_incidents(conn, resource.id, since=period_start, until=now)
        previous_incidents = get_incidents(conn, resource.id, since=previous_start, until=period_start)
        latest_audit = get_latest_audit(conn, resource.id)
        performance = latest_audit.scores.performance if latest_audit is not None else None

        current = window_metrics(current_checks, len(current_incidents))
        score = compute_health_score(performance, current.uptime, current.avg_response_time_ms, current.incident_count)

        previous = None
        previous_score = None
        if previous_checks:
            previous = window_metrics(previous_checks, len(previous_incidents))
            previous_score = compute_health_score(
                performance, previous.uptime, previous.avg_response_time_ms, previous.incident_count
            )

        entries.append(
            RankedResource(
                resource_id=resource.id,
                name=resource.name,
                group=resource.group,
                url=resource.url,
                status=resource.current_status,
                performance=performance,
                current=current,
                health_score=score,
                previous=previous,
                previous_health_score=previous_score,
                variation=trend(score, previous_score),
            )
        )
        all_current_checks.extend(current_checks)
        all_current_incidents.extend(current_incidents)

    entries.sort(key=lambda entry: (-entry.health_score, entry.resource_id))

    return Ranking(
        period_days=days,
        generated_at=now,
        entries=entries,
        daily=daily_series(all_current_checks, all_current_incidents),
        incidents_by_kind=incidents_by_kind(all_current_incidents),
        groups=groups,
    )


def audit_averages(
    conn: sqlite3.Connection,
    resource_ids: Iterable[str],
    days: int = 7,
    today: date | None = None,
) -> dict[str, dict[str, float | str | None]]:
    """Average successful audit scores per category with a trend against the prior window.

    Returns:
        Mapping of category to {"average": int | None, "previous": int | None,
        "trend": str | None}.

    Raises:
        DatabaseError: If audit records cannot be read.
    """
    today = today or datetime.now(UTC).date()
    cutoff = today - timedelta(days=days)
    previous_cutoff = today - timedelta(days=days * 2)

    current: dict[str, list[int]] = {category: [] for category in AUDIT_CATEGORIES}
    previous: dict[str, list[int]] = {category: [] for category in AUDIT_CATEGORIES}

    for resource_id in resource_ids:
        for record in get_audit_records(conn, resource_id, since=previous_cutoff):
            if not record.success:
                continue
            bucket = current if record.audit_date >= cutoff else previous
            for category, score in record.scores.as_dict().items():
                if score is not None:
                    bucket[category].append(score)

    def _avg(values: list[int]) -> int | None:
        return _round_half_up(sum(values) / len(values)) if values else None

    result = {}
    for category in AUDIT_CATEGORIES:
        avg_now = _avg(current[category])
        avg_before = _avg(previous[category])
        result[category] = {"average": avg_now, "previous": avg_before, "trend": trend(avg_now, avg_before)}
    return result
