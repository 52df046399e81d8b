"""
Tests for the persistent job queue.

Covers creation, priority claiming, retry backoff, cancellation, timeouts,
cleanup, statistics and concurrent claims.
"""

import threading
from datetime import timedelta

import pytest

from storyfactory.services.job_queue import (
    JOB_TIMEOUTS_MS,
    RETRY_DELAYS_MS,
    JobQueue,
    get_retry_delay_ms,
)
from storyfactory.utils.db_storage import SQLiteContentStore
from storyfactory.utils.errors import ValidationError
from storyfactory.utils.timestamps import parse_iso


@pytest.fixture
def queue(store, clock):
    q = JobQueue(store, clock=clock, enable_watchdog=False)
    yield q
    q.shutdown()


class TestCreateJob:
    """Tests for job creation."""

    def test_defaults(self, queue, clock):
        job = queue.create_job("user-1", "write_chapter", {"task_id": "t1"})
        assert job.status == "pending"
        assert job.attempts == 0
        assert job.max_attempts == 3
        assert job.progress == 0
        assert job.timeout_ms == JOB_TIMEOUTS_MS["write_chapter"]
        assert parse_iso(job.scheduled_for) == clock.now
        assert queue.get_job(job.id) == job

    def test_unknown_type_rejected(self, queue):
        with pytest.raises(ValidationError):
            queue.create_job("user-1", "translate_novel")

    def test_invalid_max_attempts_rejected(self, queue):
        with pytest.raises(ValidationError):
            queue.create_job("user-1", "batch_write", max_attempts=0)

    def test_invalid_timeout_rejected(self, queue):
        with pytest.raises(ValidationError):
            queue.create_job("user-1", "batch_write", timeout_ms=-5)


class TestClaim:
    """Tests for get_next_job ordering and eligibility."""

    def test_empty_queue_returns_none(self, queue):
        assert queue.get_next_job() is None

    def test_highest_priority_first(self, queue, clock):
        low = queue.create_job("u", "analyze_chapter", priority=0)
        clock.advance(seconds=1)
        high = queue.create_job("u", "analyze_chapter", priority=5)

        claimed = queue.get_next_job()
        assert claimed.id == high.id
        assert queue.get_next_job().id == low.id

    def test_oldest_first_within_priority(self, queue, clock):
        first = queue.create_job("u", "analyze_chapter")
        clock.advance(seconds=1)
        queue.create_job("u", "analyze_chapter")
        assert queue.get_next_job().id == first.id

    def test_claim_transitions_to_processing(self, queue, clock):
        job = queue.create_job("u", "export_story")
        claimed = queue.get_next_job()
        assert claimed.id == job.id
        assert claimed.status == "processing"
        assert claimed.attempts == 1
        assert parse_iso(claimed.started_at) == clock.now

    def test_future_job_not_eligible(self, queue, clock):
        queue.create_job("u", "export_story", scheduled_for=clock.now + timedelta(minutes=5))
        assert queue.get_next_job() is None
        clock.advance(minutes=5)
        assert queue.get_next_job() is not None

    def test_processing_job_not_claimed_twice(self, queue):
        queue.create_job("u", "export_story")
        assert queue.get_next_job() is not None
        assert queue.get_next_job() is None

    def test_concurrent_claims_are_exclusive(self, tmp_path):
        db_path = str(tmp_path / "concurrent.db")
        seed = JobQueue(SQLiteContentStore(db_path), enable_watchdog=False)
        created = {seed.create_job("u", "analyze_chapter").id for _ in range(20)}

        claimed = []
        lock = threading.Lock()

        def worker():
            q = JobQueue(SQLiteContentStore(db_path), enable_watchdog=False)
            while True:
                job = q.get_next_job()
                if job is None:
                    return
                with lock:
                    claimed.append(job.id)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(claimed) == sorted(created)
        assert len(claimed) == len(set(claimed))


class TestTransitions:
    """Tests for progress, completion and failure."""

    def test_update_progress_clamps(self, queue):
        job = queue.create_job("u", "batch_write")
        queue.get_next_job()
        assert queue.update_progress(job.id, 150, "almost") is True
        updated = queue.get_job(job.id)
        assert updated.progress == 100
        assert updated.progress_message == "almost"
        assert queue.update_progress(job.id, -3)
        assert queue.get_job(job.id).progress == 0

    def test_update_progress_requires_processing(self, queue):
        job = queue.create_job("u", "batch_write")
        assert queue.update_progress(job.id, 50) is False

    def test_complete_job(self, queue):
        job = queue.create_job("u", "batch_write")
        queue.get_next_job()
        assert queue.complete_job(job.id, {"written": 2}) is True
        done = queue.get_job(job.id)
        assert done.status == "completed"
        assert done.result == {"written": 2}
        assert done.progress == 100
        assert done.completed_at is not None

    def test_complete_twice_is_refused(self, queue):
        job = queue.create_job("u", "batch_write")
        queue.get_next_job()
        queue.complete_job(job.id)
        assert queue.complete_job(job.id) is False

    def test_fail_with_retry_schedules_backoff(self, queue, clock):
        job = queue.create_job("u", "write_chapter", max_attempts=3)
        queue.get_next_job()
        failed = queue.fail_job(job.id, "provider timeout")

        assert failed.status == "retrying"
        assert failed.error == "provider timeout"
        assert parse_iso(failed.scheduled_for) == clock.now + timedelta(milliseconds=get_retry_delay_ms(1))
        assert queue.get_next_job() is None

    def test_backoff_increases_with_attempts(self, queue, clock):
        job = queue.create_job("u", "write_chapter", max_attempts=4)
        delays = []
        for _ in range(3):
            claimed = queue.get_next_job()
            assert claimed is not None and claimed.id == job.id
            failed = queue.fail_job(job.id, "boom")
            delay = parse_iso(failed.scheduled_for) - clock.now
            assert delay > timedelta(0)
            delays.append(delay)
            clock.advance(seconds=delay.total_seconds())
        assert delays == sorted(delays)
        assert delays[0] < delays[-1]

    def test_exhausted_attempts_fail_permanently(self, queue, clock):
        job = queue.create_job("u", "write_chapter", max_attempts=2)
        queue.get_next_job()
        queue.fail_job(job.id, "first")
        clock.advance(minutes=10)
        queue.get_next_job()
        final = queue.fail_job(job.id, "second")
        assert final.status == "failed"
        assert final.attempts == 2
        assert final.completed_at is not None

    def test_fail_without_retry(self, queue):
        job = queue.create_job("u", "write_chapter", max_attempts=5)
        queue.get_next_job()
        assert queue.fail_job(job.id, "blocked", should_retry=False).status == "failed"

    def test_fail_of_pending_job_is_ignored(self, queue):
        job = queue.create_job("u", "write_chapter")
        assert queue.fail_job(job.id, "nope") is None
        assert queue.get_job(job.id).status == "pending"

    def test_retry_delay_table_is_capped(self):
        assert get_retry_delay_ms(0) == RETRY_DELAYS_MS[0]
        assert get_retry_delay_ms(99) == RETRY_DELAYS_MS[-1]


class TestCancel:
    """Tests for cancel_job."""

    def test_cancel_pending(self, queue):
        job = queue.create_job("owner-a", "export_story")
        assert queue.cancel_job(job.id, "owner-a") == {"success": True, "error": None}
        cancelled = queue.get_job(job.id)
        assert cancelled.status == "failed"
        assert cancelled.error == "cancelled"

    def test_cancel_requires_owner(self, queue):
        job = queue.create_job("owner-a", "export_story")
        outcome = queue.cancel_job(job.id, "owner-b")
        assert outcome["success"] is False
        assert outcome["error"] == "Unauthorized"
        assert queue.get_job(job.id).status == "pending"

    def test_cancel_processing_refused(self, queue):
        job = queue.create_job("owner-a", "export_story")
        queue.get_next_job()
        outcome = queue.cancel_job(job.id, "owner-a")
        assert outcome["success"] is False
        assert "processing" in outcome["error"]

    def test_cancel_retrying_allowed(self, queue):
        job = queue.create_job("owner-a", "export_story")
        queue.get_next_job()
        queue.fail_job(job.id, "transient")
        assert queue.cancel_job(job.id, "owner-a")["success"] is True

    def test_cancel_unknown_job(self, queue):
        assert queue.cancel_job("missing", "owner-a")["error"] == "Job not found"


class TestTimeouts:
    """Tests for watchdog timeouts and the reaper."""

    def test_handle_timeout_with_attempts_left(self, queue):
        job = queue.create_job("u", "analyze_chapter", max_attempts=3)
        queue.get_next_job()
        timed_out = queue.handle_timeout(job.id)
        assert timed_out.status == "timeout"
        assert timed_out.error == "timeout"

    def test_timed_out_job_is_claimable_after_backoff(self, queue, clock):
        job = queue.create_job("u", "analyze_chapter", max_attempts=3)
        queue.get_next_job()
        queue.handle_timeout(job.id)
        clock.advance(seconds=10)
        again = queue.get_next_job()
        assert again.id == job.id
        assert again.attempts == 2

    def test_handle_timeout_on_last_attempt_fails(self, queue):
        job = queue.create_job("u", "analyze_chapter", max_attempts=1)
        queue.get_next_job()
        assert queue.handle_timeout(job.id).status == "failed"

    def test_late_timeout_after_completion_is_ignored(self, queue):
        job = queue.create_job("u", "analyze_chapter")
        queue.get_next_job()
        queue.complete_job(job.id, {"ok": True})
        assert queue.handle_timeout(job.id) is None
        assert queue.get_job(job.id).status == "completed"

    def test_reap_expired_jobs(self, queue, clock):
        job = queue.create_job("u", "analyze_chapter", timeout_ms=1000)
        other = queue.create_job("u", "export_story")
        queue.get_next_job()
        queue.get_next_job()
        clock.advance(seconds=2)

        assert queue.reap_expired_jobs() == 1
        assert queue.get_job(job.id).status == "timeout"
        assert queue.get_job(other.id).status == "processing"

    def test_watchdog_fires(self, store):
        q = JobQueue(store, enable_watchdog=True)
        job = q.create_job("u", "analyze_chapter", timeout_ms=50, max_attempts=1)
        fired = threading.Event()
        original = q.handle_timeout

        def record(job_id):
            result = original(job_id)
            fired.set()
            return result

        q.handle_timeout = record
        q.get_next_job()
        assert fired.wait(timeout=5)
        assert q.get_job(job.id).status == "failed"
        q.shutdown()


class TestMaintenance:
    """Tests for owner listing, cleanup and stats."""

    def test_owner_jobs_newest_first(self, queue, clock):
        first = queue.create_job("owner-a", "export_story")
        clock.advance(seconds=1)
        second = queue.create_job("owner-a", "analyze_chapter")
        queue.create_job("owner-b", "export_story")

        jobs = queue.get_owner_jobs("owner-a")
        assert [job.id for job in jobs] == [second.id, first.id]
        assert queue.get_owner_jobs("owner-a", statuses=["processing"]) == []

    def test_cleanup_removes_old_terminal_jobs(self, queue, clock):
        old = queue.create_job("u", "export_story")
        queue.get_next_job()
        queue.complete_job(old.id)
        pending = queue.create_job("u", "export_story")

        clock.advance(days=8)
        recent = queue.create_job("u", "export_story")
        queue.get_next_job()
        queue.complete_job(pending.id)

        assert queue.cleanup_old_jobs(days_to_keep=7) == 1
        assert queue.get_job(old.id) is None
        assert queue.get_job(pending.id) is not None
        assert queue.get_job(recent.id) is not None

    def test_stats(self, queue, clock):
        done = queue.create_job("u", "export_story", priority=9)
        queue.create_job("u", "export_story")
        queue.get_next_job()
        clock.advance(seconds=4)
        queue.complete_job(done.id)

        stats = queue.get_queue_stats()
        assert stats.counts["completed"] == 1
        assert stats.counts["pending"] == 1
        assert stats.pending_total == 1
        assert stats.processing == 0
        assert stats.avg_processing_seconds == pytest.approx(4.0)
