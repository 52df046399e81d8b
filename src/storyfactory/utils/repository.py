"""
Content store abstraction layer.

The job queue, trackers and writer orchestrator never talk to a database
directly. They depend on this interface, which hands typed records in and
out, so tests and alternative backends can be swapped in freely.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional
import logging

from ..models import (
    AuthorProfile,
    Blueprint,
    Chapter,
    FactoryErrorEntry,
    Job,
    Production,
    ProgressionEvent,
    ProgressionState,
    PublishEntry,
    TrackedItem,
    WriteTask,
)

logger = logging.getLogger(__name__)


class ContentStore(ABC):
    """
    Abstract interface for factory persistence.

    Implementations must provide per-row atomic updates and an atomic
    claim operation for jobs and write-tasks: two callers racing for the
    same row must never both win.
    """

    # -- jobs ---------------------------------------------------------------

    @abstractmethod
    def insert_job(self, job: Job) -> None:
        pass

    @abstractmethod
    def get_job(self, job_id: str) -> Optional[Job]:
        pass

    @abstractmethod
    def update_job(
        self,
        job_id: str,
        fields: Dict[str, Any],
        expected_statuses: Optional[Iterable[str]] = None
    ) -> bool:
        """
        Conditionally update a job.

        Args:
            job_id: Job to update
            fields: Column values to set
            expected_statuses: If given, only update when the current status
                is one of these

        Returns:
            True if a row was changed, False otherwise
        """
        pass

    @abstractmethod
    def claim_next_job(self, now: str, eligible_statuses: Iterable[str]) -> Optional[Job]:
        """
        Atomically claim the next eligible job.

        Selects the highest-priority, oldest job whose status is eligible
        and whose scheduled_for is not after `now`, moves it to
        'processing', increments its attempts and stamps started_at.

        Args:
            now: Current ISO timestamp
            eligible_statuses: Statuses that may be claimed

        Returns:
            The claimed job (already transitioned), or None
        """
        pass

    @abstractmethod
    def list_jobs(
        self,
        owner_id: Optional[str] = None,
        statuses: Optional[Iterable[str]] = None,
        limit: int = 20
    ) -> List[Job]:
        """List jobs newest first, optionally filtered by owner and status."""
        pass

    @abstractmethod
    def delete_jobs_completed_before(self, cutoff: str, statuses: Iterable[str]) -> int:
        pass

    @abstractmethod
    def job_stats_rows(self) -> List[Dict[str, Any]]:
        """Return (status, started_at, completed_at) rows for every job."""
        pass

    # -- productions and their context -------------------------------------

    @abstractmethod
    def save_production(self, production: Production) -> None:
        pass

    @abstractmethod
    def get_production(self, production_id: str) -> Optional[Production]:
        pass

    @abstractmethod
    def update_production(self, production_id: str, fields: Dict[str, Any]) -> bool:
        pass

    @abstractmethod
    def save_blueprint(self, blueprint: Blueprint) -> None:
        pass

    @abstractmethod
    def get_blueprint(self, blueprint_id: str) -> Optional[Blueprint]:
        pass

    @abstractmethod
    def save_author(self, author: AuthorProfile) -> None:
        pass

    @abstractmethod
    def get_author(self, author_id: str) -> Optional[AuthorProfile]:
        pass

    @abstractmethod
    def update_author(self, author_id: str, fields: Dict[str, Any]) -> bool:
        pass

    # -- write tasks -------------------------------------------------------

    @abstractmethod
    def insert_write_task(self, task: WriteTask) -> None:
        pass

    @abstractmethod
    def get_write_task(self, task_id: str) -> Optional[WriteTask]:
        pass

    @abstractmethod
    def claim_write_tasks(
        self,
        limit: int,
        now: str,
        task_ids: Optional[Iterable[str]] = None
    ) -> List[WriteTask]:
        """
        Atomically move up to `limit` pending tasks to 'writing'.

        Tasks are taken in scheduled_time order (unscheduled tasks last);
        scheduled_time is the publish time, so chapters may be written ahead
        of it. Tasks of paused or finished productions are skipped. Each
        claimed task gets attempt_count + 1 and started_at = now.

        Args:
            limit: Maximum number of tasks to claim
            now: Current ISO timestamp
            task_ids: Restrict the claim to these task ids

        Returns:
            The claimed tasks in processing order
        """
        pass

    @abstractmethod
    def update_write_task(self, task_id: str, fields: Dict[str, Any]) -> bool:
        pass

    @abstractmethod
    def list_write_tasks(
        self,
        production_id: str,
        statuses: Optional[Iterable[str]] = None
    ) -> List[WriteTask]:
        pass

    # -- chapters, publishing, error log -----------------------------------

    @abstractmethod
    def insert_chapter(self, chapter: Chapter) -> None:
        pass

    @abstractmethod
    def get_chapter(self, chapter_id: str) -> Optional[Chapter]:
        pass

    @abstractmethod
    def list_chapters(self, novel_id: str) -> List[Chapter]:
        """Chapters of a novel in chapter order."""
        pass

    @abstractmethod
    def insert_publish_entry(self, entry: PublishEntry) -> None:
        pass

    @abstractmethod
    def list_publish_entries(self, production_id: str) -> List[PublishEntry]:
        pass

    @abstractmethod
    def insert_factory_error(self, entry: FactoryErrorEntry) -> None:
        pass

    @abstractmethod
    def list_factory_errors(
        self,
        production_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50
    ) -> List[FactoryErrorEntry]:
        pass

    # -- tracker backing tables --------------------------------------------

    @abstractmethod
    def save_character_state(self, state: ProgressionState) -> None:
        pass

    @abstractmethod
    def load_character_states(self, project_id: str) -> List[ProgressionState]:
        pass

    @abstractmethod
    def insert_progression_event(self, event: ProgressionEvent) -> None:
        pass

    @abstractmethod
    def load_progression_events(self, project_id: str) -> List[ProgressionEvent]:
        pass

    @abstractmethod
    def save_tracked_item(self, item: TrackedItem) -> None:
        pass

    @abstractmethod
    def load_tracked_items(self, project_id: str) -> List[TrackedItem]:
        pass


def create_content_store(db_path: Optional[str] = None) -> ContentStore:
    """
    Factory function to create the content store.

    Args:
        db_path: SQLite file path (if None, uses STORYFACTORY_DB_PATH or the
            default data/storyfactory.db)

    Returns:
        ContentStore instance
    """
    from .db_storage import SQLiteContentStore
    from ..config import FactorySettings

    path = db_path or FactorySettings.from_env().db_path
    logger.info(f"Creating SQLite content store at {path}")
    return SQLiteContentStore(path)
