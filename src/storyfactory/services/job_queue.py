"""
Persistent job queue with priority, retry/backoff, timeout and progress.

Jobs live in the content store, so any number of worker processes can poll
the same queue. Claiming is delegated to the store's atomic claim, and every
later transition is a conditional update on the job's current status, which
keeps a late watchdog or a duplicate call from reviving a terminal job.
"""

import logging
import threading
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from ..models import Job, JOB_STATUSES, JOB_TYPES, QueueStats
from ..utils.errors import ValidationError
from ..utils.repository import ContentStore
from ..utils.timestamps import parse_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

# Per-type execution budget in milliseconds
JOB_TIMEOUTS_MS: Dict[str, int] = {
    "write_chapter": 5 * 60 * 1000,
    "batch_write": 30 * 60 * 1000,
    "analyze_chapter": 2 * 60 * 1000,
    "generate_summary": 3 * 60 * 1000,
    "export_story": 10 * 60 * 1000,
}
DEFAULT_TIMEOUT_MS = 5 * 60 * 1000

# Delay before retry, indexed by attempts already made (capped at the last entry)
RETRY_DELAYS_MS = (1000, 5000, 30000, 60000, 300000)

DEFAULT_MAX_ATTEMPTS = 3

# 'timeout' marks a job whose watchdog fired and whose retry is scheduled
CLAIMABLE_STATUSES = ("pending", "retrying", "timeout")
CANCELLABLE_STATUSES = ("pending", "retrying", "timeout")
TERMINAL_STATUSES = ("completed", "failed")

CANCELLED_REASON = "cancelled"
TIMEOUT_REASON = "timeout"


def get_retry_delay_ms(attempts: int) -> int:
    """Backoff delay for a job that has already made `attempts` attempts."""
    index = min(max(attempts, 0), len(RETRY_DELAYS_MS) - 1)
    return RETRY_DELAYS_MS[index]


class JobQueue:
    """
    Job queue backed by a ContentStore.

    A claimed job owns an in-process watchdog timer; a job orphaned by a
    crashed worker is reclaimed by `reap_expired_jobs`, which any worker
    may run.
    """

    def __init__(
        self,
        store: ContentStore,
        clock: Optional[Callable[[], datetime]] = None,
        enable_watchdog: bool = True
    ):
        """
        Initialize the queue.

        Args:
            store: Content store holding the jobs table
            clock: Returns the current aware datetime (default: UTC now)
            enable_watchdog: Start a timer for each claimed job
        """
        self.store = store
        self._clock = clock or utc_now
        self.enable_watchdog = enable_watchdog
        self._timers: Dict[str, threading.Timer] = {}
        self._timers_lock = threading.Lock()

    def _now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------

    def create_job(
        self,
        owner_id: str,
        job_type: str,
        payload: Optional[Dict[str, Any]] = None,
        priority: int = 0,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        timeout_ms: Optional[int] = None,
        scheduled_for: Optional[datetime] = None
    ) -> Job:
        """
        Create a new pending job.

        Args:
            owner_id: User or system that owns the job
            job_type: One of the known job types
            payload: Opaque handler input
            priority: Higher values are dequeued first
            max_attempts: Attempts allowed before the job fails for good
            timeout_ms: Execution budget (default: per-type table)
            scheduled_for: Earliest time the job may run (default: now)

        Returns:
            The persisted Job

        Raises:
            ValidationError: If the type, attempts or timeout are invalid
        """
        if job_type not in JOB_TYPES:
            raise ValidationError(
                f"Unknown job type '{job_type}'",
                details={"allowed": list(JOB_TYPES)}
            )
        if max_attempts < 1:
            raise ValidationError("max_attempts must be at least 1")
        if timeout_ms is not None and timeout_ms <= 0:
            raise ValidationError("timeout_ms must be positive")

        now = self._now()
        job = Job(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            type=job_type,
            priority=priority,
            payload=payload or {},
            max_attempts=max_attempts,
            timeout_ms=timeout_ms or JOB_TIMEOUTS_MS.get(job_type, DEFAULT_TIMEOUT_MS),
            scheduled_for=to_iso(scheduled_for or now),
            created_at=to_iso(now),
            updated_at=to_iso(now),
        )
        self.store.insert_job(job)
        logger.info(f"Created job {job.id} ({job_type}) for {owner_id} with priority {priority}")
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        return self.store.get_job(job_id)

    def get_owner_jobs(
        self,
        owner_id: str,
        statuses: Optional[List[str]] = None,
        limit: int = 20
    ) -> List[Job]:
        """Jobs of one owner, newest first."""
        return self.store.list_jobs(owner_id=owner_id, statuses=statuses, limit=limit)

    # ------------------------------------------------------------------
    # Claim and transitions
    # ------------------------------------------------------------------

    def get_next_job(self) -> Optional[Job]:
        """
        Claim the next eligible job.

        Returns:
            The job, already in 'processing' with attempts incremented, or
            None when nothing is due
        """
        job = self.store.claim_next_job(to_iso(self._now()), CLAIMABLE_STATUSES)
        if job is None:
            return None
        logger.info(
            f"Claimed job {job.id} ({job.type}), attempt {job.attempts}/{job.max_attempts}"
        )
        self._start_watchdog(job)
        return job

    def update_progress(self, job_id: str, progress: float, message: Optional[str] = None) -> bool:
        """
        Report progress of a running job.

        Args:
            job_id: Job being processed
            progress: Percentage, clamped to [0, 100]
            message: Optional human-readable progress note

        Returns:
            True if the job was processing and got updated
        """
        clamped = int(max(0, min(100, round(progress))))
        fields: Dict[str, Any] = {"progress": clamped, "updated_at": to_iso(self._now())}
        if message is not None:
            fields["progress_message"] = message
        return self.store.update_job(job_id, fields, expected_statuses=("processing",))

    def complete_job(self, job_id: str, result: Any = None) -> bool:
        """
        Mark a processing job completed.

        Returns:
            True if the transition happened
        """
        self._cancel_watchdog(job_id)
        now = to_iso(self._now())
        updated = self.store.update_job(
            job_id,
            {
                "status": "completed",
                "result": result,
                "error": None,
                "progress": 100,
                "completed_at": now,
                "updated_at": now,
            },
            expected_statuses=("processing",),
        )
        if updated:
            logger.info(f"Job {job_id} completed")
        else:
            logger.warning(f"Job {job_id} could not be completed: not processing")
        return updated

    def fail_job(self, job_id: str, error: str, should_retry: bool = True) -> Optional[Job]:
        """
        Record a failed attempt.

        With retries left (and `should_retry`), the job moves to 'retrying'
        and becomes eligible again after a backoff delay; otherwise it is
        terminally 'failed'.

        Args:
            job_id: Job being processed
            error: Failure description
            should_retry: Whether the failure is worth retrying

        Returns:
            The job after the transition, or None if it was not processing
        """
        self._cancel_watchdog(job_id)
        return self._record_failure(job_id, error, should_retry, retry_status="retrying")

    def _record_failure(
        self,
        job_id: str,
        error: str,
        should_retry: bool,
        retry_status: str
    ) -> Optional[Job]:
        job = self.store.get_job(job_id)
        if job is None:
            logger.warning(f"Cannot fail job {job_id}: not found")
            return None
        if job.status != "processing":
            logger.warning(f"Cannot fail job {job_id}: status is {job.status}")
            return None

        now = self._now()
        if should_retry and job.attempts < job.max_attempts:
            delay_ms = get_retry_delay_ms(job.attempts)
            fields = {
                "status": retry_status,
                "error": error,
                "scheduled_for": to_iso(now + timedelta(milliseconds=delay_ms)),
                "updated_at": to_iso(now),
            }
            outcome = f"retry in {delay_ms}ms"
        else:
            fields = {
                "status": "failed",
                "error": error,
                "completed_at": to_iso(now),
                "updated_at": to_iso(now),
            }
            outcome = "failed permanently"

        if not self.store.update_job(job_id, fields, expected_statuses=("processing",)):
            logger.warning(f"Job {job_id} changed state before failure could be recorded")
            return None
        logger.warning(
            f"Job {job_id} attempt {job.attempts}/{job.max_attempts} failed ({error}); {outcome}"
        )
        return self.store.get_job(job_id)

    def cancel_job(self, job_id: str, owner_id: str) -> Dict[str, Any]:
        """
        Cancel a job that has not started.

        Args:
            job_id: Job to cancel
            owner_id: Requesting owner; must match the job's owner

        Returns:
            Dict with 'success' and, on failure, 'error'
        """
        job = self.store.get_job(job_id)
        if job is None:
            return {"success": False, "error": "Job not found"}
        if job.owner_id != owner_id:
            return {"success": False, "error": "Unauthorized"}
        if job.status not in CANCELLABLE_STATUSES:
            return {"success": False, "error": f"Job cannot be cancelled while {job.status}"}

        now = to_iso(self._now())
        updated = self.store.update_job(
            job_id,
            {"status": "failed", "error": CANCELLED_REASON, "completed_at": now, "updated_at": now},
            expected_statuses=CANCELLABLE_STATUSES,
        )
        if not updated:
            return {"success": False, "error": "Job cannot be cancelled: it was claimed meanwhile"}
        logger.info(f"Job {job_id} cancelled by {owner_id}")
        return {"success": True, "error": None}

    # ------------------------------------------------------------------
    # Watchdog
    # ------------------------------------------------------------------

    def _start_watchdog(self, job: Job) -> None:
        if not self.enable_watchdog:
            return
        timer = threading.Timer(job.timeout_ms / 1000.0, self._on_timeout, args=(job.id,))
        timer.daemon = True
        with self._timers_lock:
            previous = self._timers.pop(job.id, None)
            self._timers[job.id] = timer
        if previous is not None:
            previous.cancel()
        timer.start()

    def _cancel_watchdog(self, job_id: str) -> None:
        with self._timers_lock:
            timer = self._timers.pop(job_id, None)
        if timer is not None:
            timer.cancel()

    def _on_timeout(self, job_id: str) -> None:
        with self._timers_lock:
            self._timers.pop(job_id, None)
        self.handle_timeout(job_id)

    def handle_timeout(self, job_id: str) -> Optional[Job]:
        """
        Treat a processing job as timed out.

        Equivalent to a retryable failure with error 'timeout'; a job that
        still has attempts left is parked in 'timeout' until its retry is due.

        Returns:
            The job after the transition, or None if it was no longer processing
        """
        try:
            job = self._record_failure(job_id, TIMEOUT_REASON, True, retry_status="timeout")
        except Exception as e:
            logger.error(f"Watchdog failed to time out job {job_id}: {e}", exc_info=True)
            return None
        if job is not None:
            logger.warning(f"Job {job_id} exceeded its timeout; now {job.status}")
        return job

    def reap_expired_jobs(self) -> int:
        """
        Time out processing jobs whose budget has elapsed.

        Covers jobs whose worker died before its watchdog could fire.

        Returns:
            Number of jobs timed out
        """
        now = self._now()
        reaped = 0
        for job in self.store.list_jobs(statuses=("processing",), limit=1000):
            started = parse_iso(job.started_at)
            if started is None:
                continue
            if now - started >= timedelta(milliseconds=job.timeout_ms):
                self._cancel_watchdog(job.id)
                if self.handle_timeout(job.id) is not None:
                    reaped += 1
        if reaped:
            logger.warning(f"Reaped {reaped} expired job(s)")
        return reaped

    def shutdown(self) -> None:
        """Cancel all watchdog timers owned by this instance."""
        with self._timers_lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    # ------------------------------------------------------------------
    # Maintenance and stats
    # ------------------------------------------------------------------

    def cleanup_old_jobs(self, days_to_keep: int = 7) -> int:
        """
        Delete terminal jobs older than the retention window.

        Returns:
            Number of jobs deleted
        """
        cutoff = to_iso(self._now() - timedelta(days=days_to_keep))
        removed = self.store.delete_jobs_completed_before(cutoff, TERMINAL_STATUSES)
        logger.info(f"Cleaned up {removed} job(s) completed before {cutoff}")
        return removed

    def get_queue_stats(self) -> QueueStats:
        """Counts per status plus mean processing time of completed jobs."""
        counts = {status: 0 for status in JOB_STATUSES}
        durations = []
        for row in self.store.job_stats_rows():
            status = row["status"]
            counts[status] = counts.get(status, 0) + 1
            if status == "completed" and row["started_at"] and row["completed_at"]:
                elapsed = parse_iso(row["completed_at"]) - parse_iso(row["started_at"])
                durations.append(elapsed.total_seconds())

        avg = round(sum(durations) / len(durations), 3) if durations else 0.0
        return QueueStats(
            counts=counts,
            pending_total=counts["pending"] + counts["retrying"] + counts["timeout"],
            processing=counts["processing"],
            completed=counts["completed"],
            failed_total=counts["failed"],
            avg_processing_seconds=avg,
        )
