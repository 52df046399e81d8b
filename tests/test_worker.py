"""
Tests for the worker loop.
"""

from unittest.mock import patch

from storyfactory.jobs import JobContext
from storyfactory.models import Chapter
from storyfactory.services.job_queue import JobQueue
from worker import work


def make_context(store, settings):
    queue = JobQueue(store, enable_watchdog=False)
    return JobContext(store=store, queue=queue, settings=settings)


class TestWork:
    """Tests for work()."""

    def test_burst_processes_due_jobs(self, store, settings):
        store.insert_chapter(Chapter(id="c1", novel_id="n1", chapter_number=1, title="Dawn", content="Text"))
        ctx = make_context(store, settings)
        first = ctx.queue.create_job("owner", "export_story", {"novel_id": "n1", "format": "txt"})
        second = ctx.queue.create_job("owner", "export_story", {"novel_id": "missing"})

        assert work(ctx, poll_interval=0, burst=True) == 2

        assert ctx.queue.get_job(first.id).status == "completed"
        assert ctx.queue.get_job(second.id).status == "failed"

    def test_max_jobs(self, store, settings):
        ctx = make_context(store, settings)
        for _ in range(3):
            ctx.queue.create_job("owner", "export_story", {"novel_id": "n"})
        assert work(ctx, poll_interval=0, burst=True, max_jobs=2) == 2
        assert ctx.queue.get_queue_stats().counts["pending"] == 1

    def test_empty_queue_in_burst_mode(self, store, settings):
        ctx = make_context(store, settings)
        with patch("worker.time.sleep") as sleep:
            assert work(ctx, poll_interval=5, burst=True) == 0
        sleep.assert_not_called()

    def test_idle_poll_sleeps(self, store, settings):
        ctx = make_context(store, settings)
        ctx.queue.create_job("owner", "export_story", {"novel_id": "n"})
        claimed = ctx.queue.get_next_job()

        with patch("worker.time.sleep") as sleep, \
                patch.object(ctx.queue, "get_next_job", side_effect=[None, claimed]):
            assert work(ctx, poll_interval=5, max_jobs=1) == 1
        sleep.assert_called_once_with(5)
