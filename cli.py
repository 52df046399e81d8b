#!/usr/bin/env python3
"""
CLI tool for operating the serial fiction factory.

Provides commands for initializing the database, enqueueing jobs, adding
write-tasks, running a writer batch and inspecting the queue without the
status API.
"""

import os
import sys
import json
import uuid
import logging
from typing import Optional, Tuple

from dotenv import load_dotenv
import click

from storyfactory.config import FactorySettings
from storyfactory.models import JOB_TYPES, WriteTask
from storyfactory.providers.factory import create_provider
from storyfactory.quality_scorer import LLMQualityScorer
from storyfactory.services.job_queue import JobQueue
from storyfactory.services.writer_orchestrator import WriterOrchestrator
from storyfactory.utils.errors import APIError
from storyfactory.utils.repository import create_content_store
from storyfactory.utils.timestamps import parse_iso, to_iso, utc_now

# Load environment variables
load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "WARNING").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


def _settings(ctx: click.Context) -> FactorySettings:
    try:
        settings = FactorySettings.from_env()
    except ValueError as e:
        click.echo(f"Error: invalid configuration: {e}", err=True)
        sys.exit(1)
    if ctx.obj.get("db_path"):
        settings.db_path = ctx.obj["db_path"]
    return settings


@click.group()
@click.option('--db', 'db_path', type=click.Path(dir_okay=False), default=None,
              help='SQLite database path (default: STORYFACTORY_DB_PATH)')
@click.pass_context
def cli(ctx: click.Context, db_path: Optional[str]):
    """CLI tool for operating the serial fiction factory."""
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path


@cli.command('init-db')
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the database schema if it does not exist."""
    settings = _settings(ctx)
    create_content_store(settings.db_path)
    click.echo(f"✓ Database ready at {settings.db_path}")


@cli.command()
@click.argument('job_type', type=click.Choice(list(JOB_TYPES)))
@click.option('--owner', default='operator', help='Owner id (default: operator)')
@click.option('--payload', default='{}', help='JSON payload for the job handler')
@click.option('--priority', default=0, type=int, help='Higher runs first (default: 0)')
@click.option('--max-attempts', default=3, type=int, help='Attempts before failing (default: 3)')
@click.pass_context
def enqueue(ctx: click.Context, job_type: str, owner: str, payload: str, priority: int, max_attempts: int) -> None:
    """
    Enqueue a job.

    Raises:
        SystemExit: Exits with code 1 if the payload or job is invalid.
    """
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        click.echo(f"Error: payload is not valid JSON: {e}", err=True)
        sys.exit(1)
    if not isinstance(data, dict):
        click.echo("Error: payload must be a JSON object", err=True)
        sys.exit(1)

    queue = JobQueue(create_content_store(_settings(ctx).db_path), enable_watchdog=False)
    try:
        job = queue.create_job(owner, job_type, payload=data, priority=priority, max_attempts=max_attempts)
    except APIError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)
    click.echo(f"✓ Enqueued {job.type} job {job.id}")


@cli.command()
@click.option('--format', 'output_format', type=click.Choice(['table', 'json']),
              default='table', help='Output format (default: table)')
@click.pass_context
def stats(ctx: click.Context, output_format: str) -> None:
    """Show job counts per status."""
    queue = JobQueue(create_content_store(_settings(ctx).db_path), enable_watchdog=False)
    queue_stats = queue.get_queue_stats()

    if output_format == 'json':
        click.echo(json.dumps(queue_stats.model_dump(), indent=2))
        return

    click.echo(f"\n{'Status':<12} {'Jobs':>6}")
    click.echo("-" * 19)
    for status, count in queue_stats.counts.items():
        click.echo(f"{status:<12} {count:>6}")
    click.echo(f"\nWaiting: {queue_stats.pending_total}  Failed: {queue_stats.failed_total}  "
               f"Avg processing: {queue_stats.avg_processing_seconds:.1f}s")


@cli.command()
@click.option('--days', default=None, type=int, help='Keep jobs newer than this (default: JOB_RETENTION_DAYS)')
@click.pass_context
def cleanup(ctx: click.Context, days: Optional[int]) -> None:
    """Delete completed and failed jobs older than the retention window."""
    settings = _settings(ctx)
    queue = JobQueue(create_content_store(settings.db_path), enable_watchdog=False)
    removed = queue.cleanup_old_jobs(days_to_keep=days if days is not None else settings.job_retention_days)
    click.echo(f"✓ Removed {removed} old job(s)")


@cli.command('run-batch')
@click.option('--batch-size', default=None, type=int, help='Tasks to process (default: WRITER_BATCH_SIZE)')
@click.option('--task-id', 'task_ids', multiple=True, help='Only process these write-task ids')
@click.pass_context
def run_batch(ctx: click.Context, batch_size: Optional[int], task_ids: Tuple[str, ...]) -> None:
    """
    Write pending chapters right now, without the job queue.

    Raises:
        SystemExit: Exits with code 1 if the provider cannot be configured.
    """
    settings = _settings(ctx)
    store = create_content_store(settings.db_path)
    try:
        provider = create_provider(
            settings.llm_provider,
            model_name=settings.llm_model,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
        )
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    orchestrator = WriterOrchestrator(
        store,
        provider,
        scorer=LLMQualityScorer(provider, model=settings.llm_model),
        settings=settings,
    )
    result = orchestrator.run_batch(batch_size=batch_size, task_ids=list(task_ids) or None)

    for outcome in result.outcomes:
        if outcome.status == "completed":
            marker = " (rewritten)" if outcome.rewritten else ""
            click.echo(f"✓ Chapter {outcome.chapter_number}: quality {outcome.quality_score:.1f}{marker}")
        else:
            click.echo(f"✗ Chapter {outcome.chapter_number}: {outcome.error}")
    click.echo(f"\nWritten: {result.written}  Rewritten: {result.rewritten}  Failed: {result.failed}")


@cli.command('add-task')
@click.argument('production_id')
@click.argument('chapter_number', type=int)
@click.option('--arc', 'arc_number', default=None, type=int, help='Arc number')
@click.option('--objectives', default='', help='Plot objectives for the chapter')
@click.option('--tension', default=50, type=click.IntRange(0, 100), help='Tension target 0-100 (default: 50)')
@click.option('--instructions', default='', help='Special instructions')
@click.option('--scheduled-time', default=None, help='Publish time (ISO-8601)')
@click.option('--slot', default=None, help='Publish slot (default: evening)')
@click.pass_context
def add_task(
    ctx: click.Context,
    production_id: str,
    chapter_number: int,
    arc_number: Optional[int],
    objectives: str,
    tension: int,
    instructions: str,
    scheduled_time: Optional[str],
    slot: Optional[str]
) -> None:
    """
    Add a pending write-task for a production.

    Raises:
        SystemExit: Exits with code 1 if the production does not exist.
    """
    store = create_content_store(_settings(ctx).db_path)
    if store.get_production(production_id) is None:
        click.echo(f"Error: Production '{production_id}' not found.", err=True)
        sys.exit(1)
    if scheduled_time:
        try:
            scheduled_time = to_iso(parse_iso(scheduled_time))
        except ValueError:
            click.echo(f"Error: invalid --scheduled-time '{scheduled_time}'", err=True)
            sys.exit(1)

    task = WriteTask(
        id=str(uuid.uuid4()),
        production_id=production_id,
        chapter_number=chapter_number,
        arc_number=arc_number,
        plot_objectives=objectives,
        tension_target=tension,
        special_instructions=instructions,
        scheduled_time=scheduled_time,
        scheduled_slot=slot,
        created_at=to_iso(utc_now()),
    )
    store.insert_write_task(task)
    click.echo(f"✓ Added write task {task.id} for chapter {chapter_number}")


if __name__ == '__main__':
    cli(obj={})
