"""
Tests for the background job handlers and run_job.
"""

from unittest.mock import MagicMock

import pytest

from storyfactory.item_tracker import create_item_tracker
from storyfactory.jobs import JobContext, run_job
from storyfactory.models import Chapter
from storyfactory.services.job_queue import JobQueue
from storyfactory.utils.errors import ContentBlockedError, ProviderError
from tests.conftest import FakeProvider, ScriptedScorer, make_chapter_text


@pytest.fixture
def queue(store, clock):
    return JobQueue(store, clock=clock, enable_watchdog=False)


@pytest.fixture
def make_context(store, queue, settings):
    def _make(responses=(), scores=(80,)):
        provider = FakeProvider(list(responses))
        ctx = JobContext(
            store=store,
            queue=queue,
            settings=settings,
            provider_factory=lambda: provider,
            scorer=ScriptedScorer(list(scores)),
        )
        return ctx, provider
    return _make


def claim(queue, job_type, payload):
    queue.create_job("owner-1", job_type, payload)
    return queue.get_next_job()


class TestWriteChapterJob:
    """Tests for the write_chapter handler."""

    def test_writes_the_task(self, store, queue, production, add_task, make_context):
        task = add_task(production.id, 1)
        ctx, _ = make_context([make_chapter_text(1, "Gate")])
        job = claim(queue, "write_chapter", {"task_id": task.id})

        assert run_job(job, ctx) is True

        done = queue.get_job(job.id)
        assert done.status == "completed"
        assert done.result["status"] == "completed"
        assert done.result["chapter_id"] == store.get_write_task(task.id).result_chapter_id

    def test_provider_failure_is_retried(self, store, queue, clock, production, add_task, make_context):
        task = add_task(production.id, 1)
        ctx, provider = make_context([ProviderError("503 from upstream"), make_chapter_text(1)])
        job = claim(queue, "write_chapter", {"task_id": task.id})

        assert run_job(job, ctx) is False
        assert queue.get_job(job.id).status == "retrying"
        assert store.get_write_task(task.id).status == "failed"

        clock.advance(minutes=1)
        retry = queue.get_next_job()
        assert retry.id == job.id
        assert run_job(retry, ctx) is True
        assert store.get_write_task(task.id).status == "completed"
        assert len(provider.calls) == 2

    def test_content_block_fails_permanently(self, queue, production, add_task, make_context):
        task = add_task(production.id, 1)
        ctx, _ = make_context([ContentBlockedError("blocked", reason="SAFETY")])
        job = claim(queue, "write_chapter", {"task_id": task.id})

        run_job(job, ctx)

        failed = queue.get_job(job.id)
        assert failed.status == "failed"
        assert failed.attempts == 1

    def test_missing_task_id(self, queue, make_context):
        ctx, _ = make_context()
        job = claim(queue, "write_chapter", {})
        assert run_job(job, ctx) is False
        failed = queue.get_job(job.id)
        assert failed.status == "failed"
        assert "task_id" in failed.error

    def test_completed_task_is_skipped(self, store, queue, production, add_task, make_context):
        task = add_task(production.id, 1, status="completed", result_chapter_id="c-1")
        ctx, provider = make_context()
        job = claim(queue, "write_chapter", {"task_id": task.id})

        assert run_job(job, ctx) is True
        assert queue.get_job(job.id).result == {"task_id": task.id, "chapter_id": "c-1", "skipped": True}
        assert provider.calls == []

    def test_paused_production_is_a_conflict(self, queue, make_production, add_task, make_context):
        production = make_production(status="paused")
        task = add_task(production.id, 1)
        ctx, _ = make_context()
        job = claim(queue, "write_chapter", {"task_id": task.id})

        run_job(job, ctx)

        assert queue.get_job(job.id).status == "failed"


class TestBatchWriteJob:
    """Tests for the batch_write handler."""

    def test_batch_summary_and_progress(self, queue, production, add_task, make_context):
        add_task(production.id, 1)
        add_task(production.id, 2)
        ctx, _ = make_context([make_chapter_text(1), ProviderError("quota")])
        job = claim(queue, "batch_write", {"batch_size": 5})

        assert run_job(job, ctx) is True

        result = queue.get_job(job.id).result
        assert result["processed"] == 2
        assert result["written"] == 1
        assert result["failed"] == 1
        assert len(result["outcomes"]) == 2

    def test_invalid_batch_size(self, queue, make_context):
        ctx, _ = make_context()
        job = claim(queue, "batch_write", {"batch_size": "many"})
        run_job(job, ctx)
        assert queue.get_job(job.id).status == "failed"


class TestAnalysisJobs:
    """Tests for analyze_chapter and generate_summary."""

    @pytest.fixture
    def chapter(self, store, production):
        chapter = Chapter(
            id="chapter-1",
            novel_id=production.novel_id,
            production_id=production.id,
            chapter_number=1,
            title="Gate",
            content='Lâm Phong rút ra thanh kiếm "Huyết Long Kiếm", một món thượng phẩm.\n"Đi thôi," hắn nói.',
        )
        store.insert_chapter(chapter)
        return chapter

    def test_analyze_chapter(self, store, queue, production, chapter, make_context):
        create_item_tracker(production.project_id, store=store).register_item(
            "Huyết Long Kiếm", "weapon", "thượng phẩm", "", 1
        )
        ctx, _ = make_context(scores=[55])
        job = claim(queue, "analyze_chapter", {"chapter_id": chapter.id})

        assert run_job(job, ctx) is True

        result = queue.get_job(job.id).result
        assert result["quality"]["score"] == 55
        assert result["dialogue_ratio"] == 0.5
        assert result["word_count"] > 0
        detected = {item["name"]: item for item in result["detected_items"]}
        assert detected["Huyết Long Kiếm"]["is_new"] is False
        assert ctx.scorer.calls == [(1, "tu tiên")]

    def test_analyze_missing_chapter(self, queue, make_context):
        ctx, _ = make_context()
        job = claim(queue, "analyze_chapter", {"chapter_id": "missing"})
        run_job(job, ctx)
        assert queue.get_job(job.id).status == "failed"

    def test_summary_stored_for_latest_chapter(self, store, queue, make_production, make_context):
        production = make_production("prod-sum", current_chapter=1)
        store.insert_chapter(Chapter(id="c-sum", novel_id=production.novel_id, production_id=production.id,
                                     chapter_number=1, title="Gate", content="Lâm Phong enters the sect."))
        ctx, provider = make_context(["Lâm Phong enters the sect. "])
        job = claim(queue, "generate_summary", {"chapter_id": "c-sum"})

        assert run_job(job, ctx) is True

        assert queue.get_job(job.id).result["stored_on_production"] is True
        assert store.get_production(production.id).last_chapter_summary == "Lâm Phong enters the sect."
        assert provider.calls[0]["temperature"] == 0.3

    def test_summary_of_older_chapter_not_stored(self, store, queue, make_production, make_context):
        production = make_production("prod-old", current_chapter=5)
        store.insert_chapter(Chapter(id="c-old", novel_id=production.novel_id, production_id=production.id,
                                     chapter_number=2, title="Old", content="Earlier events."))
        ctx, _ = make_context(["Earlier events happened."])
        job = claim(queue, "generate_summary", {"chapter_id": "c-old"})

        run_job(job, ctx)

        assert queue.get_job(job.id).result["stored_on_production"] is False
        assert store.get_production(production.id).last_chapter_summary is None


class TestExportJob:
    """Tests for export_story."""

    def test_export_markdown(self, store, queue, settings, make_context, tmp_path):
        for number in (1, 2):
            store.insert_chapter(Chapter(id=f"c{number}", novel_id="novel-x", chapter_number=number,
                                         title=f"Part {number}", content=f"Body {number}", word_count=2))
        ctx, _ = make_context()
        job = claim(queue, "export_story", {"novel_id": "novel-x", "format": "md", "title": "Sky Sword"})

        assert run_job(job, ctx) is True

        result = queue.get_job(job.id).result
        assert result["format"] == "markdown"
        assert result["chapters"] == 2
        assert result["word_count"] == 4
        assert result["path"].startswith(settings.export_dir)
        text = (tmp_path / "exports" / "Sky_Sword.md").read_text(encoding="utf-8")
        assert "## Chapter 2: Part 2" in text

    def test_export_unknown_novel(self, queue, make_context):
        ctx, _ = make_context()
        job = claim(queue, "export_story", {"novel_id": "nothing"})
        run_job(job, ctx)
        assert queue.get_job(job.id).status == "failed"


class TestRunJob:
    """Tests for run_job dispatch."""

    def test_unknown_handler(self, queue, make_context):
        ctx, _ = make_context()
        job = claim(queue, "export_story", {"novel_id": "n"})
        assert run_job(job, ctx, handlers={}) is False
        failed = queue.get_job(job.id)
        assert failed.status == "failed"
        assert "No handler" in failed.error

    def test_unexpected_error_is_retried(self, queue, make_context):
        ctx, _ = make_context()
        job = claim(queue, "export_story", {"novel_id": "n"})
        handler = MagicMock(side_effect=RuntimeError("disk hiccup"))

        assert run_job(job, ctx, handlers={"export_story": handler}) is False
        assert queue.get_job(job.id).status == "retrying"
        assert queue.get_job(job.id).error == "disk hiccup"

    def test_provider_is_created_lazily(self, store, queue, settings):
        factory = MagicMock()
        ctx = JobContext(store=store, queue=queue, settings=settings, provider_factory=factory)
        factory.assert_not_called()
        assert ctx.provider is factory.return_value
        assert ctx.provider is factory.return_value
        factory.assert_called_once()
