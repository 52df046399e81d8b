"""
Background job handlers for the serial fiction factory.

Each handler receives the claimed Job and a JobContext and returns a
JSON-serializable result. Handlers raise on failure; run_job turns the
exception into a retryable or permanent failure through is_retryable.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from .config import FactorySettings
from .exports import export_novel
from .item_tracker import create_item_tracker
from .models import Job, TaskOutcome
from .providers.base import QualityScorer, TextGenerationProvider
from .providers.factory import create_provider
from .quality_scorer import LLMQualityScorer, dialogue_ratio
from .services.job_queue import JobQueue
from .services.writer_orchestrator import WriterOrchestrator
from .utils.chapter_prompt_builder import build_summary_prompt
from .utils.errors import (
    ConflictError,
    ContentBlockedError,
    NotFoundError,
    ProviderError,
    ServiceUnavailableError,
    ValidationError,
    is_retryable,
)
from .utils.repository import ContentStore
from .utils.timestamps import utc_now_iso
from .utils.word_count import count_words

logger = logging.getLogger(__name__)


@dataclass
class JobContext:
    """
    Dependencies shared by job handlers.

    The provider is created lazily so jobs that never call it (exports)
    run without LLM credentials.
    """
    store: ContentStore
    queue: JobQueue
    settings: FactorySettings
    provider_factory: Optional[Callable[[], TextGenerationProvider]] = None
    scorer: Optional[QualityScorer] = None
    sleep: Optional[Callable[[float], None]] = None
    _provider: Optional[TextGenerationProvider] = field(default=None, repr=False)

    @property
    def provider(self) -> TextGenerationProvider:
        if self._provider is None:
            try:
                if self.provider_factory is not None:
                    self._provider = self.provider_factory()
                else:
                    self._provider = create_provider(
                        self.settings.llm_provider,
                        model_name=self.settings.llm_model,
                        temperature=self.settings.llm_temperature,
                        max_tokens=self.settings.llm_max_tokens,
                    )
            except ValueError as e:
                raise ServiceUnavailableError("llm", f"Text generation is not configured: {e}")
        return self._provider

    def get_scorer(self) -> QualityScorer:
        if self.scorer is None:
            self.scorer = LLMQualityScorer(self.provider, model=self.settings.llm_model)
        return self.scorer

    def orchestrator(self) -> WriterOrchestrator:
        kwargs = {}
        if self.sleep is not None:
            kwargs["sleep"] = self.sleep
        return WriterOrchestrator(
            self.store,
            self.provider,
            scorer=self.get_scorer(),
            settings=self.settings,
            **kwargs
        )


def _require(payload: Dict[str, Any], key: str) -> Any:
    value = payload.get(key)
    if value in (None, ""):
        raise ValidationError(f"Job payload is missing '{key}'")
    return value


def _raise_for_outcome(outcome: TaskOutcome) -> None:
    """Re-raise a failed task outcome as an exception the queue understands."""
    message = outcome.error or "Chapter writing failed"
    if outcome.error_code == "CONTENT_BLOCKED":
        raise ContentBlockedError(message)
    if outcome.error_code in ("NOT_FOUND", "VALIDATION_ERROR"):
        raise ValidationError(message, details={"task_id": outcome.task_id})
    raise ProviderError(message, error_code=outcome.error_code or "PROVIDER_ERROR")


def write_chapter_job(job: Job, ctx: JobContext) -> Dict[str, Any]:
    """
    Write the chapter of one write-task.

    A task left 'failed' by an earlier attempt of this job is put back to
    'pending' so the orchestrator can claim it again.
    """
    task_id = _require(job.payload, "task_id")
    task = ctx.store.get_write_task(task_id)
    if task is None:
        raise NotFoundError("Write task", task_id)

    if task.status == "completed":
        logger.info(f"Write task {task_id} already completed; nothing to do")
        return {"task_id": task_id, "chapter_id": task.result_chapter_id, "skipped": True}
    if task.status in ("writing", "rewriting"):
        raise ConflictError(f"Write task {task_id} is already being written")
    if task.status == "failed":
        ctx.store.update_write_task(task_id, {"status": "pending", "error_message": None})

    ctx.queue.update_progress(job.id, 10, f"Writing chapter {task.chapter_number}")
    result = ctx.orchestrator().run_batch(batch_size=1, task_ids=[task_id])
    if not result.outcomes:
        raise ConflictError(
            f"Write task {task_id} could not be claimed; its production may be paused or finished"
        )

    outcome = result.outcomes[0]
    if outcome.status == "failed":
        _raise_for_outcome(outcome)
    return outcome.model_dump()


def batch_write_job(job: Job, ctx: JobContext) -> Dict[str, Any]:
    """Run one orchestrator batch."""
    batch_size = job.payload.get("batch_size")
    task_ids = job.payload.get("task_ids")
    if batch_size is not None and (not isinstance(batch_size, int) or batch_size < 1):
        raise ValidationError("batch_size must be a positive integer")

    def report(done: int, total: int) -> None:
        ctx.queue.update_progress(job.id, 100 * done / max(total, 1), f"{done}/{total} chapters processed")

    result = ctx.orchestrator().run_batch(batch_size=batch_size, task_ids=task_ids, on_progress=report)
    return result.summary()


def analyze_chapter_job(job: Job, ctx: JobContext) -> Dict[str, Any]:
    """Score a stored chapter and list the items it mentions."""
    chapter_id = _require(job.payload, "chapter_id")
    chapter = ctx.store.get_chapter(chapter_id)
    if chapter is None:
        raise NotFoundError("Chapter", chapter_id)

    genre = job.payload.get("genre")
    project_id = None
    if chapter.production_id:
        production = ctx.store.get_production(chapter.production_id)
        if production is not None:
            project_id = production.project_id
            blueprint = ctx.store.get_blueprint(production.blueprint_id)
            if blueprint is not None and not genre:
                genre = blueprint.genre

    ctx.queue.update_progress(job.id, 20, "Scoring chapter")
    quality = ctx.get_scorer().score(chapter.content, chapter.chapter_number, genre or "fiction")

    ctx.queue.update_progress(job.id, 80, "Detecting items")
    detected = []
    if project_id:
        detected = create_item_tracker(project_id, store=ctx.store).detect_items(chapter.content)

    return {
        "chapter_id": chapter.id,
        "chapter_number": chapter.chapter_number,
        "word_count": count_words(chapter.content),
        "dialogue_ratio": round(dialogue_ratio(chapter.content), 3),
        "quality": quality.model_dump(),
        "detected_items": [item.model_dump() for item in detected],
    }


def generate_summary_job(job: Job, ctx: JobContext) -> Dict[str, Any]:
    """
    Summarize a stored chapter.

    The summary becomes the production's last_chapter_summary when the
    chapter is the production's latest one.
    """
    chapter_id = _require(job.payload, "chapter_id")
    chapter = ctx.store.get_chapter(chapter_id)
    if chapter is None:
        raise NotFoundError("Chapter", chapter_id)

    ctx.queue.update_progress(job.id, 30, f"Summarizing chapter {chapter.chapter_number}")
    summary = ctx.provider.generate(
        "You write concise chapter summaries.",
        build_summary_prompt(chapter.content, chapter.chapter_number),
        model=ctx.settings.llm_model,
        temperature=0.3,
        max_tokens=256,
    ).strip()

    stored = False
    if chapter.production_id:
        production = ctx.store.get_production(chapter.production_id)
        if production is not None and production.current_chapter == chapter.chapter_number:
            stored = ctx.store.update_production(production.id, {
                "last_chapter_summary": summary,
                "updated_at": utc_now_iso(),
            })
    return {"chapter_id": chapter.id, "summary": summary, "stored_on_production": stored}


def export_story_job(job: Job, ctx: JobContext) -> Dict[str, Any]:
    """Export a novel's chapters to markdown, txt or docx."""
    novel_id = _require(job.payload, "novel_id")
    format_type = job.payload.get("format", "markdown")
    ctx.queue.update_progress(job.id, 10, f"Exporting novel {novel_id} as {format_type}")
    return export_novel(
        ctx.store,
        novel_id,
        format_type,
        job.payload.get("output_dir") or ctx.settings.export_dir,
        title=job.payload.get("title"),
    )


JOB_HANDLERS: Dict[str, Callable[[Job, JobContext], Any]] = {
    "write_chapter": write_chapter_job,
    "batch_write": batch_write_job,
    "analyze_chapter": analyze_chapter_job,
    "generate_summary": generate_summary_job,
    "export_story": export_story_job,
}


def run_job(
    job: Job,
    ctx: JobContext,
    handlers: Optional[Dict[str, Callable[[Job, JobContext], Any]]] = None
) -> bool:
    """
    Execute a claimed job and record its outcome in the queue.

    Args:
        job: Job returned by JobQueue.get_next_job
        ctx: Handler dependencies
        handlers: Handler table (default: JOB_HANDLERS)

    Returns:
        True if the job completed
    """
    handlers = handlers if handlers is not None else JOB_HANDLERS
    handler = handlers.get(job.type)
    if handler is None:
        ctx.queue.fail_job(job.id, f"No handler for job type '{job.type}'", should_retry=False)
        return False

    logger.info(f"Running job {job.id} ({job.type})")
    try:
        result = handler(job, ctx)
    except Exception as e:
        retry = is_retryable(e)
        message = getattr(e, "message", None) or str(e) or type(e).__name__
        if retry:
            logger.warning(f"Job {job.id} ({job.type}) failed, will retry if attempts remain: {message}")
        else:
            logger.error(f"Job {job.id} ({job.type}) failed permanently: {message}", exc_info=True)
        ctx.queue.fail_job(job.id, message, should_retry=retry)
        return False

    return ctx.queue.complete_job(job.id, result)
