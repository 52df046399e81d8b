"""
Service layer for the serial fiction factory.

This package contains the job queue and the writer orchestrator.
"""

from .job_queue import JobQueue, get_retry_delay_ms
from .writer_orchestrator import WriterOrchestrator

__all__ = [
    "JobQueue",
    "get_retry_delay_ms",
    "WriterOrchestrator",
]
