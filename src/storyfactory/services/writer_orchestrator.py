"""
Writer orchestrator: turns pending write-tasks into stored chapters.

Per task the state machine is
    pending -> writing -> (rewriting)? -> completed | failed

Each task is claimed atomically, written, scored, optionally rewritten once,
persisted and scheduled for publication. A failing task is recorded and the
batch moves on; nothing raised while processing one task escapes run_batch.
"""

import logging
import time
import uuid
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from ..config import FactorySettings
from ..models import (
    AuthorProfile,
    BatchResult,
    Blueprint,
    Chapter,
    FactoryErrorEntry,
    Production,
    PublishEntry,
    QualityResult,
    TaskOutcome,
    WriteTask,
)
from ..providers.base import QualityScorer, TextGenerationProvider
from ..quality_scorer import HeuristicQualityScorer
from ..utils.chapter_prompt_builder import (
    ChapterPromptParams,
    build_chapter_prompt,
    build_rewrite_prompt,
    build_summary_prompt,
    build_system_prompt,
    build_tracker_context,
)
from ..utils.errors import APIError, ContentBlockedError, NotFoundError, ProviderError
from ..utils.repository import ContentStore
from ..utils.timestamps import to_iso, utc_now
from ..utils.word_count import count_words, default_title, extract_title

logger = logging.getLogger(__name__)

CONTENT_PREVIEW_CHARS = 500

ContextBuilder = Callable[[Optional[ContentStore], Production, Blueprint, int], str]


class WriterOrchestrator:
    """
    Batch chapter writer.

    The provider, scorer, tracker-context builder, sleep function and clock
    are all injected so a test can run a batch deterministically.
    """

    def __init__(
        self,
        store: ContentStore,
        provider: TextGenerationProvider,
        scorer: Optional[QualityScorer] = None,
        settings: Optional[FactorySettings] = None,
        context_builder: Optional[ContextBuilder] = build_tracker_context,
        sleep: Callable[[float], None] = time.sleep,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = store
        self.provider = provider
        self.scorer = scorer or HeuristicQualityScorer()
        self.settings = settings or FactorySettings()
        self.context_builder = context_builder
        self._sleep = sleep
        self._clock = clock or utc_now

    def _now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    def run_batch(
        self,
        batch_size: Optional[int] = None,
        task_ids: Optional[List[str]] = None,
        on_progress: Optional[Callable[[int, int], None]] = None
    ) -> BatchResult:
        """
        Write up to batch_size pending chapters.

        Tasks are claimed one at a time in scheduled order, so a production
        paused by an earlier failure in the same batch is not claimed again.

        Args:
            batch_size: Maximum tasks to process (default: settings.batch_size)
            task_ids: Restrict processing to these write-task ids
            on_progress: Called with (processed, limit) after each task

        Returns:
            BatchResult with one TaskOutcome per processed task
        """
        limit = batch_size or self.settings.batch_size
        if task_ids is not None:
            limit = min(limit, len(task_ids)) if task_ids else 0

        result = BatchResult()
        while len(result.outcomes) < limit:
            if result.outcomes and self.settings.inter_task_delay > 0:
                self._sleep(self.settings.inter_task_delay)
            claimed = self.store.claim_write_tasks(1, to_iso(self._now()), task_ids)
            if not claimed:
                break
            result.outcomes.append(self.process_task(claimed[0]))
            if on_progress is not None:
                on_progress(len(result.outcomes), limit)

        if result.outcomes:
            logger.info(
                f"Writer batch finished: {result.written} written, {result.rewritten} rewritten, "
                f"{result.failed} failed"
            )
        else:
            logger.info("Writer batch found no pending write tasks")
        return result

    def process_task(self, task: WriteTask) -> TaskOutcome:
        """
        Write one claimed task; never raises.

        Args:
            task: A task already moved to 'writing' by the store claim

        Returns:
            TaskOutcome describing the result
        """
        logger.info(f"Writing chapter {task.chapter_number} (task {task.id}, attempt {task.attempt_count})")
        try:
            return self._write(task)
        except Exception as e:
            return self._handle_failure(task, e)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _load_context(self, task: WriteTask) -> Tuple[Production, Blueprint, Optional[AuthorProfile]]:
        production = self.store.get_production(task.production_id)
        if production is None:
            raise NotFoundError("Production", task.production_id)
        blueprint = self.store.get_blueprint(production.blueprint_id)
        if blueprint is None:
            raise NotFoundError("Blueprint", production.blueprint_id)
        author = self.store.get_author(production.author_id) if production.author_id else None
        if author is None:
            logger.warning(f"Author {production.author_id} not found; using the default persona")
        return production, blueprint, author

    def _generate(self, system_prompt: str, user_prompt: str, **overrides) -> str:
        return self.provider.generate(
            system_prompt,
            user_prompt,
            model=overrides.get("model", self.settings.llm_model),
            temperature=overrides.get("temperature", self.settings.llm_temperature),
            max_tokens=overrides.get("max_tokens", self.settings.llm_max_tokens),
        )

    def _write(self, task: WriteTask) -> TaskOutcome:
        production, blueprint, author = self._load_context(task)

        tracker_context = ""
        if self.context_builder is not None:
            tracker_context = self.context_builder(self.store, production, blueprint, task.chapter_number)

        system_prompt = build_system_prompt(author, blueprint)
        user_prompt = build_chapter_prompt(ChapterPromptParams(
            blueprint=blueprint,
            production=production,
            task=task,
            tracker_context=tracker_context,
        ))

        draft = self._generate(system_prompt, user_prompt)
        title, body = extract_title(draft, task.chapter_number)
        quality = self.scorer.score(body, task.chapter_number, blueprint.genre)
        logger.info(f"Chapter {task.chapter_number} draft scored {quality.score:.1f}")

        rewritten = False
        if quality.score < self.settings.min_quality_score and task.attempt_count < self.settings.max_rewrite_attempts:
            rewrite = self._rewrite(task, system_prompt, draft, quality)
            if rewrite is not None:
                new_title, new_body = extract_title(rewrite, task.chapter_number)
                if new_title != default_title(task.chapter_number):
                    title = new_title
                body = new_body
                quality = self.scorer.score(body, task.chapter_number, blueprint.genre)
                rewritten = True
                logger.info(f"Chapter {task.chapter_number} rewrite scored {quality.score:.1f}")

        now = self._now()
        word_count = count_words(body)
        chapter = Chapter(
            id=str(uuid.uuid4()),
            novel_id=production.novel_id,
            production_id=production.id,
            chapter_number=task.chapter_number,
            title=title,
            content=body,
            word_count=word_count,
            quality_score=quality.score,
            created_at=to_iso(now),
        )
        self.store.insert_chapter(chapter)

        summary = self._summarize(body, task.chapter_number) if self.settings.generate_summaries else None

        self._update_production(production, task, quality.score, rewritten, summary, now)
        if author is not None:
            self._update_author(author, quality.score)

        self.store.insert_publish_entry(PublishEntry(
            id=str(uuid.uuid4()),
            production_id=production.id,
            chapter_id=chapter.id,
            chapter_number=task.chapter_number,
            scheduled_time=task.scheduled_time or to_iso(now),
            publish_slot=task.scheduled_slot or self.settings.default_publish_slot,
            created_at=to_iso(now),
        ))

        self.store.update_write_task(task.id, {
            "status": "completed",
            "completed_at": to_iso(now),
            "result_chapter_id": chapter.id,
            "content_preview": body[:CONTENT_PREVIEW_CHARS],
            "word_count": word_count,
            "quality_score": quality.score,
            "error_message": None,
        })
        logger.info(
            f"Chapter {task.chapter_number} of production {production.id} completed "
            f"({word_count} words, quality {quality.score:.1f})"
        )
        return TaskOutcome(
            task_id=task.id,
            chapter_number=task.chapter_number,
            status="completed",
            chapter_id=chapter.id,
            quality_score=quality.score,
            rewritten=rewritten,
        )

    def _rewrite(self, task: WriteTask, system_prompt: str, draft: str, quality: QualityResult) -> Optional[str]:
        """One rewrite pass; returns None (keep the draft) if it fails."""
        self.store.update_write_task(task.id, {"status": "rewriting"})
        logger.info(
            f"Rewriting chapter {task.chapter_number}: score {quality.score:.1f} "
            f"below {self.settings.min_quality_score}"
        )
        try:
            rewrite = self._generate(
                system_prompt,
                build_rewrite_prompt(draft, quality.issues, quality.suggestions),
            )
        except ProviderError as e:
            logger.warning(f"Rewrite of chapter {task.chapter_number} failed, keeping the draft: {e}")
            return None
        return rewrite if rewrite and rewrite.strip() else None

    def _summarize(self, body: str, chapter_number: int) -> Optional[str]:
        try:
            return self._generate(
                "You write concise chapter summaries.",
                build_summary_prompt(body, chapter_number),
                temperature=0.3,
                max_tokens=256,
            ).strip()
        except ProviderError as e:
            logger.warning(f"Summary of chapter {chapter_number} failed: {e}")
            return None

    def _update_production(
        self,
        production: Production,
        task: WriteTask,
        score: float,
        rewritten: bool,
        summary: Optional[str],
        now: datetime
    ) -> None:
        today = now.date().isoformat()
        written_today = 1 if production.last_write_date != today else production.chapters_written_today + 1
        window = (production.quality_scores + [score])[-self.settings.quality_window:]

        fields = {
            "current_chapter": max(production.current_chapter, task.chapter_number),
            "quality_scores": window,
            "avg_chapter_quality": sum(window) / len(window),
            "chapters_written_today": written_today,
            "last_write_date": today,
            "consecutive_errors": 0,
            "total_rewrites": production.total_rewrites + (1 if rewritten else 0),
            "updated_at": to_iso(now),
        }
        if summary:
            fields["last_chapter_summary"] = summary
        if task.chapter_number >= production.total_chapters and production.status == "active":
            fields["status"] = "finished"
            logger.info(f"Production {production.id} finished at chapter {task.chapter_number}")
        self.store.update_production(production.id, fields)

    def _update_author(self, author: AuthorProfile, score: float) -> None:
        written = author.total_chapters_written + 1
        current_avg = author.avg_quality_score if author.total_chapters_written else score
        new_avg = (current_avg * author.total_chapters_written + score) / written
        self.store.update_author(author.id, {
            "total_chapters_written": written,
            "avg_quality_score": new_avg,
        })

    # ------------------------------------------------------------------
    # Failure
    # ------------------------------------------------------------------

    def _handle_failure(self, task: WriteTask, error: Exception) -> TaskOutcome:
        blocked = isinstance(error, ContentBlockedError)
        error_code = error.error_code if isinstance(error, APIError) else "UNEXPECTED_ERROR"
        message = error.message if isinstance(error, APIError) else str(error) or type(error).__name__

        if isinstance(error, APIError):
            logger.error(f"Chapter {task.chapter_number} (task {task.id}) failed: [{error_code}] {message}")
        else:
            logger.error(f"Chapter {task.chapter_number} (task {task.id}) failed: {message}", exc_info=True)

        try:
            self._record_failure(task, error, blocked, error_code, message)
        except Exception as e:
            logger.error(f"Could not record failure of task {task.id}: {e}", exc_info=True)

        return TaskOutcome(
            task_id=task.id,
            chapter_number=task.chapter_number,
            status="failed",
            error=message,
            error_code=error_code,
        )

    def _record_failure(
        self,
        task: WriteTask,
        error: Exception,
        blocked: bool,
        error_code: str,
        message: str
    ) -> None:
        now = to_iso(self._now())
        self.store.update_write_task(task.id, {
            "status": "failed",
            "error_message": message,
            "completed_at": now,
        })

        paused = False
        production = self.store.get_production(task.production_id)
        if production is not None:
            consecutive = production.consecutive_errors + 1
            fields = {
                "consecutive_errors": consecutive,
                "last_error": message,
                "last_error_at": now,
                "updated_at": now,
            }
            if consecutive >= self.settings.pause_after_errors and production.status == "active":
                fields["status"] = "paused"
                paused = True
            self.store.update_production(production.id, fields)

        if blocked:
            error_type = "content_blocked"
        elif isinstance(error, ProviderError):
            error_type = "ai_failure"
        else:
            error_type = "task_failure"

        details = dict(error.details) if isinstance(error, APIError) else {"exception": type(error).__name__}
        details.update({"task_id": task.id, "attempt_count": task.attempt_count})
        self.store.insert_factory_error(FactoryErrorEntry(
            id=str(uuid.uuid4()),
            production_id=task.production_id,
            chapter_number=task.chapter_number,
            error_type=error_type,
            error_code=error_code,
            error_message=message,
            error_details=details,
            severity="error" if blocked else "warning",
            requires_attention=blocked or task.attempt_count >= self.settings.max_rewrite_attempts,
            created_at=now,
        ))

        if paused:
            logger.warning(
                f"Production {task.production_id} paused after {self.settings.pause_after_errors} consecutive errors"
            )
            self.store.insert_factory_error(FactoryErrorEntry(
                id=str(uuid.uuid4()),
                production_id=task.production_id,
                chapter_number=task.chapter_number,
                error_type="production_paused",
                error_code="TOO_MANY_ERRORS",
                error_message=f"Paused after {self.settings.pause_after_errors} consecutive errors",
                error_details={"last_error": message},
                severity="critical",
                requires_attention=True,
                created_at=now,
            ))
