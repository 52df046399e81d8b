"""
Serial Fiction Factory

A production pipeline for long-running serialized web fiction: a persistent
job queue, continuity trackers for power progression and items, and a
writer orchestrator that turns scheduled write-tasks into published chapters.
"""

from .progression_tracker import ProgressionTracker, create_progression_tracker, DEFAULT_POWER_SYSTEM
from .item_tracker import ItemTracker, create_item_tracker
from .grades import GRADE_LADDER, validate_grade_for_chapter
from .services.job_queue import JobQueue
from .services.writer_orchestrator import WriterOrchestrator

__version__ = "0.1.0"

__all__ = [
    "ProgressionTracker",
    "create_progression_tracker",
    "DEFAULT_POWER_SYSTEM",
    "ItemTracker",
    "create_item_tracker",
    "GRADE_LADDER",
    "validate_grade_for_chapter",
    "JobQueue",
    "WriterOrchestrator",
]
