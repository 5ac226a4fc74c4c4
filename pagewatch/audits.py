"""Performance audits: PageSpeed client, durable job queue and manual triggers."""

import logging
import math
import re
import sqlite3
import threading
import time
from collections.abc import Callable, Iterable, Sequence
from datetime import UTC, datetime, timedelta

import requests

from .config import AuditConfig
from .database import (
    DatabaseError,
    claim_job,
    create_audit_job,
    get_due_jobs,
    mark_job_failed,
    mark_job_quota_blocked,
    mark_job_retry,
    mark_job_succeeded,
    save_audit_record,
    update_resource_audit_status,
)
from .models import (
    AUDIT_CATEGORIES,
    CATEGORY_ACCESSIBILITY,
    CATEGORY_BEST_PRACTICES,
    CATEGORY_PERFORMANCE,
    CATEGORY_SEO,
    JOB_FAILED,
    JOB_PENDING,
    JOB_QUOTA_BLOCKED,
    JOB_RUNNING,
    JOB_SUCCESS,
    AuditJob,
    AuditRecord,
    AuditResult,
    AuditScores,
    MonitoredResource,
)

logger = logging.getLogger(__name__)

PAGESPEED_API_URL = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"

# Errors that will not clear with a short retry: exhausted quota, bad or missing key, throttling.
_QUOTA_ERROR = re.compile(r"quota|key|rate.?limit|403|429", re.IGNORECASE)

# Per-job outcomes reported by AuditJobQueue.process_job().
OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_RESCHEDULED = "rescheduled"
OUTCOME_FAILED = "failed"
OUTCOME_QUOTA_BLOCKED = "quota_blocked"
OUTCOME_SKIPPED = "skipped"


class ManualAuditRateLimited(Exception):
    """Raised when a manual audit is requested too soon after the previous one."""

    def __init__(self, resource_id: str, retry_after: int) -> None:
        super().__init__(f"Manual audit for '{resource_id}' rate limited. Try again in {retry_after} seconds.")
        self.resource_id = resource_id
        self.retry_after = retry_after


def is_quota_error(error: str) -> bool:
    """Return True if an audit error looks like a quota or key problem."""
    return bool(_QUOTA_ERROR.search(error))


def backoff_delay(attempts: int, backoff_minutes: Sequence[int]) -> timedelta:
    """Delay before the next try after `attempts` failed attempts (attempts >= 1).

    The last entry of the table repeats once the table is exhausted.
    """
    index = min(max(attempts, 1) - 1, len(backoff_minutes) - 1)
    return timedelta(minutes=backoff_minutes[index])


def _extract_score(data: dict, category: str) -> int | None:
    try:
        score = data["lighthouseResult"]["categories"][category]["score"]
    except (KeyError, TypeError):
        return None
    if not isinstance(score, int | float) or isinstance(score, bool):
        return None
    return int(math.floor(score * 100 + 0.5))


class PageSpeedClient:
    """Client for the PageSpeed Insights v5 API.

    The API key is optional; without one requests run under the anonymous
    (lower) rate limit. run() never raises: failures come back as an
    unsuccessful AuditResult whose error text carries the HTTP status.
    """

    def __init__(
        self,
        api_key: str | None = None,
        strategy: str = "mobile",
        timeout: int = 60,
        api_url: str = PAGESPEED_API_URL,
    ) -> None:
        self._api_key = api_key
        self._strategy = strategy
        self._timeout = timeout
        self._api_url = api_url

    @property
    def has_api_key(self) -> bool:
        return bool(self._api_key)

    def run(
        self,
        url: str,
        categories: Iterable[str] | None = None,
        strategy: str | None = None,
    ) -> AuditResult:
        """Audit one URL.

        Args:
            url: Page to audit.
            categories: Score categories to request. Empty or None requests all of them.
            strategy: "mobile" or "desktop"; defaults to the client's strategy.
        """
        strategy = strategy or self._strategy
        categories = list(categories or ()) or list(AUDIT_CATEGORIES)

        params: list[tuple[str, str]] = [("url", url), ("strategy", strategy)]
        if self._api_key:
            params.append(("key", self._api_key))
        params.extend(("category", category) for category in categories)

        try:
            response = requests.get(
                self._api_url,
                params=params,
                headers={"Accept": "application/json"},
                timeout=self._timeout,
            )
            if not response.ok:
                return AuditResult(
                    url=url,
                    strategy=strategy,
                    success=False,
                    error=f"PageSpeed API error: {response.status_code} - {response.text}",
                )
            data = response.json()
        except requests.RequestException as e:
            return AuditResult(url=url, strategy=strategy, success=False, error=str(e) or "Request failed")
        except ValueError as e:
            return AuditResult(url=url, strategy=strategy, success=False, error=f"Invalid PageSpeed response: {e}")

        scores = AuditScores(
            performance=_extract_score(data, CATEGORY_PERFORMANCE),
            accessibility=_extract_score(data, CATEGORY_ACCESSIBILITY),
            best_practices=_extract_score(data, CATEGORY_BEST_PRACTICES),
            seo=_extract_score(data, CATEGORY_SEO),
        )
        return AuditResult(url=url, strategy=strategy, success=True, scores=scores)


class ManualAuditLimiter:
    """Per-resource minimum interval between manual audit triggers.

    Process-wide and in memory only; a restart clears it.
    """

    def __init__(self, min_interval_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._min_interval = min_interval_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._last_run: dict[str, float] = {}

    def remaining(self, resource_id: str) -> int:
        """Seconds until the resource may be audited manually again (0 if allowed)."""
        with self._lock:
            return self._remaining_locked(resource_id, self._clock())

    def acquire(self, resource_id: str) -> None:
        """Record a manual trigger, or raise if the previous one is too recent.

        Raises:
            ManualAuditRateLimited: With the remaining seconds, rounded up.
        """
        with self._lock:
            now = self._clock()
            remaining = self._remaining_locked(resource_id, now)
            if remaining > 0:
                raise ManualAuditRateLimited(resource_id, remaining)
            self._last_run[resource_id] = now

    def _remaining_locked(self, resource_id: str, now: float) -> int:
        last = self._last_run.get(resource_id)
        if last is None:
            return 0
        elapsed = now - last
        if elapsed >= self._min_interval:
            return 0
        return math.ceil(self._min_interval - elapsed)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class AuditJobQueue:
    """Durable audit job queue wrapping calls to the scoring API.

    Job life cycle:
        pending -> running (conditional claim) -> success
                                               -> pending, rescheduled with backoff
                                               -> failed, once max_attempts is reached
                                               -> quota_blocked, retried after a long delay

    Jobs are processed one at a time with a fixed delay in between, since all
    of them share the API's rate limit.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        client: PageSpeedClient,
        config: AuditConfig,
        categories_provider: Callable[[], Sequence[str]] | None = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the queue.

        Args:
            conn: Database connection.
            client: Scoring API client.
            config: Audit settings (batch size, delays, backoff table).
            categories_provider: Returns the enabled score categories at call time.
                Defaults to the configured categories.
            clock: Returns the current UTC time.
            sleep: Called with the inter-job delay in seconds.
        """
        self._conn = conn
        self._client = client
        self._config = config
        self._categories_provider = categories_provider or (lambda: config.categories)
        self._clock = clock
        self._sleep = sleep
        self.limiter = ManualAuditLimiter(config.manual_interval_minutes * 60)

    def enqueue(self, resource: MonitoredResource) -> AuditJob | None:
        """Queue an audit for a resource unless one is already pending or running.

        Returns:
            The new job, or None when an equivalent job was already queued.

        Raises:
            DatabaseError: If the job cannot be stored.
        """
        job = create_audit_job(self._conn, resource.id, resource.url, self._config.max_attempts, self._clock())
        if job is None:
            logger.debug("Audit for %s already queued", resource.id)
            return None
        update_resource_audit_status(self._conn, resource.id, JOB_PENDING)
        logger.info("Queued audit job %d for %s", job.id, resource.id)
        return job

    def enqueue_all(self, resources: Iterable[MonitoredResource]) -> int:
        """Queue audits for several resources. Storage errors are logged per resource."""
        queued = 0
        for resource in resources:
            try:
                if self.enqueue(resource) is not None:
                    queued += 1
            except DatabaseError as e:
                logger.error("Failed to queue audit for %s: %s", resource.id, e)
        return queued

    def process_due(self) -> dict[str, int]:
        """Process one batch of due jobs, oldest first.

        Returns:
            Summary counters: processed, succeeded, failed, rescheduled,
            quota_blocked and skipped.
        """
        summary = {
            "processed": 0,
            OUTCOME_SUCCEEDED: 0,
            OUTCOME_FAILED: 0,
            OUTCOME_RESCHEDULED: 0,
            OUTCOME_QUOTA_BLOCKED: 0,
            OUTCOME_SKIPPED: 0,
        }

        try:
            jobs = get_due_jobs(self._conn, self._clock(), self._config.batch_size)
        except DatabaseError as e:
            logger.error("Failed to fetch due audit jobs: %s", e)
            return summary

        if not jobs:
            logger.debug("No due audit jobs")
            return summary

        logger.info("Processing %d audit job(s)", len(jobs))
        for index, job in enumerate(jobs):
            try:
                outcome = self.process_job(job)
            except DatabaseError as e:
                logger.error("Audit job %d aborted by storage error: %s", job.id, e)
                outcome = OUTCOME_SKIPPED

            summary[outcome] += 1
            if outcome != OUTCOME_SKIPPED:
                summary["processed"] += 1

            if index < len(jobs) - 1 and self._config.job_delay_seconds > 0:
                self._sleep(self._config.job_delay_seconds)

        logger.info(
            "Audit batch done: %d processed, %d succeeded, %d rescheduled, %d failed, %d quota-blocked",
            summary["processed"],
            summary[OUTCOME_SUCCEEDED],
            summary[OUTCOME_RESCHEDULED],
            summary[OUTCOME_FAILED],
            summary[OUTCOME_QUOTA_BLOCKED],
        )
        return summary

    def process_job(self, job: AuditJob) -> str:
        """Claim and run one job, then record its outcome.

        A storage error after the claim is recorded as a transient failure of
        the job, so a claimed job never stays running.

        Returns:
            One of the OUTCOME_* constants. OUTCOME_SKIPPED means another worker
            claimed the job first.

        Raises:
            DatabaseError: If the job cannot be claimed, or its failure cannot be stored.
        """
        if not claim_job(self._conn, job.id, self._clock()):
            logger.info("Audit job %d already claimed, skipping", job.id)
            return OUTCOME_SKIPPED

        try:
            return self._run_claimed(job)
        except DatabaseError as e:
            error = f"Storage error: {e}"
            logger.error("Audit job %d for %s hit a storage error: %s", job.id, job.resource_id, e)
            return self._record_failure(job, error, self._clock())

    def _run_claimed(self, job: AuditJob) -> str:
        update_resource_audit_status(self._conn, job.resource_id, JOB_RUNNING)
        logger.info("Running audit job %d for %s", job.id, job.url)

        result = self._client.run(job.url, self._categories_provider())
        now = self._clock()

        if not result.success:
            error = result.error or "Audit failed"
            if is_quota_error(error):
                return self._quota_block(job, error, now)
            self._save_record(job.resource_id, result, now)
            return self._record_failure(job, error, now)

        self._save_record(job.resource_id, result, now)
        mark_job_succeeded(self._conn, job.id, now)
        update_resource_audit_status(self._conn, job.resource_id, JOB_SUCCESS)
        logger.info("Audit job %d for %s succeeded", job.id, job.resource_id)
        return OUTCOME_SUCCEEDED

    def run_manual_audit(self, resource: MonitoredResource) -> AuditRecord:
        """Audit a resource right away, bypassing the queue.

        Raises:
            ManualAuditRateLimited: If the resource was audited manually too recently.
            DatabaseError: If the record cannot be stored.
        """
        self.limiter.acquire(resource.id)
        logger.info("Running manual audit for %s", resource.id)
        result = self._client.run(resource.url, self._categories_provider())
        record = self._save_record(resource.id, result, self._clock())
        if result.success:
            update_resource_audit_status(self._conn, resource.id, JOB_SUCCESS)
        else:
            error = result.error or "Unknown error"
            status = JOB_QUOTA_BLOCKED if is_quota_error(error) else JOB_FAILED
            update_resource_audit_status(self._conn, resource.id, status, error)
        return record

    def _save_record(self, resource_id: str, result: AuditResult, now: datetime) -> AuditRecord:
        record = AuditRecord(
            resource_id=resource_id,
            audit_date=now.date(),
            success=result.success,
            scores=result.scores or AuditScores(),
            error=result.error,
            audited_at=now,
        )
        save_audit_record(self._conn, record)
        return record

    def _record_failure(self, job: AuditJob, error: str, now: datetime) -> str:
        attempts = job.attempts + 1
        if attempts >= job.max_attempts:
            mark_job_failed(self._conn, job.id, attempts, error, now)
            update_resource_audit_status(self._conn, job.resource_id, JOB_FAILED, error)
            logger.error("Audit job %d for %s failed after %d attempts: %s", job.id, job.resource_id, attempts, error)
            return OUTCOME_FAILED

        delay = backoff_delay(attempts, self._config.backoff_minutes)
        mark_job_retry(self._conn, job.id, attempts, now + delay, error)
        update_resource_audit_status(self._conn, job.resource_id, JOB_PENDING, error)
        logger.warning(
            "Audit job %d for %s rescheduled in %s (attempt %d): %s",
            job.id,
            job.resource_id,
            delay,
            attempts,
            error,
        )
        return OUTCOME_RESCHEDULED

    def _quota_block(self, job: AuditJob, error: str, now: datetime) -> str:
        retry_at = now + timedelta(hours=self._config.quota_retry_hours)
        mark_job_quota_blocked(self._conn, job.id, job.attempts + 1, retry_at, error)
        update_resource_audit_status(self._conn, job.resource_id, JOB_QUOTA_BLOCKED, error)
        logger.warning(
            "Audit job %d for %s quota-blocked, retry in %sh: %s",
            job.id,
            job.resource_id,
            self._config.quota_retry_hours,
            error,
        )
        return OUTCOME_QUOTA_BLOCKED
