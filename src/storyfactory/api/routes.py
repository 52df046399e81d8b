"""
Flask route handlers for the factory status API.

Read-mostly endpoints for operator dashboards: queue statistics, job
status and submission, production progress and the factory error log.
The content store and the job queue are taken from the app config so
tests can inject their own.
"""

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from flask import Flask
    from flask_limiter import Limiter

from flask import current_app, jsonify, request

from ..services.job_queue import JobQueue
from ..utils.errors import APIError, ConflictError, NotFoundError, ValidationError
from ..utils.repository import ContentStore
from ..utils.timestamps import parse_iso

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 200


def _store() -> ContentStore:
    return current_app.config["CONTENT_STORE"]


def _queue() -> JobQueue:
    return current_app.config["JOB_QUEUE"]


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _int_arg(name: str, default: int, max_value: int = MAX_LIST_LIMIT) -> int:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError(f"Query parameter '{name}' must be an integer")
    if value < 1 or value > max_value:
        raise ValidationError(f"Query parameter '{name}' must be between 1 and {max_value}")
    return value


def _list_arg(name: str) -> Optional[List[str]]:
    raw = request.args.get(name)
    if not raw:
        return None
    return [part.strip() for part in raw.split(",") if part.strip()]


def register_routes(flask_app: 'Flask', limiter_instance: 'Limiter') -> None:
    """
    Register all status API routes.

    Args:
        flask_app: Flask application instance
        limiter_instance: Limiter instance for rate limiting
    """

    @flask_app.route('/api/health')
    def health():
        """
        Health check endpoint.

        Returns:
            JSON response with status "ok" and the number of waiting jobs
        """
        stats = _queue().get_queue_stats()
        return jsonify({"status": "ok", "pending_jobs": stats.pending_total})

    @flask_app.route('/api/jobs/stats', methods=['GET'])
    @limiter_instance.limit(lambda: current_app.config["STATUS_RATE_LIMIT"])
    def job_stats():
        """Queue counts per status and mean processing time."""
        return jsonify(_queue().get_queue_stats().model_dump())

    @flask_app.route('/api/jobs', methods=['POST'])
    @limiter_instance.limit(lambda: current_app.config["ENQUEUE_RATE_LIMIT"])
    def create_job():
        """
        Enqueue a job.

        Request body:
            {"owner_id": str, "type": str, "payload": {...},
             "priority": int, "max_attempts": int,
             "timeout_ms": int, "scheduled_for": ISO-8601 str}

        Returns:
            201 with the created job

        Raises:
            ValidationError: If fields are missing or invalid
        """
        data = _json_body()
        owner_id = data.get("owner_id")
        job_type = data.get("type")
        if not owner_id or not job_type:
            raise ValidationError("Both 'owner_id' and 'type' are required")
        payload = data.get("payload") or {}
        if not isinstance(payload, dict):
            raise ValidationError("'payload' must be a JSON object")
        try:
            priority = int(data.get("priority", 0))
            max_attempts = int(data.get("max_attempts", 3))
        except (TypeError, ValueError):
            raise ValidationError("'priority' and 'max_attempts' must be integers")

        timeout_ms = data.get("timeout_ms")
        valid_timeout = isinstance(timeout_ms, int) and not isinstance(timeout_ms, bool) and timeout_ms > 0
        if timeout_ms is not None and not valid_timeout:
            raise ValidationError("'timeout_ms' must be a positive integer")
        scheduled_for = data.get("scheduled_for")
        if scheduled_for is not None:
            if not isinstance(scheduled_for, str):
                raise ValidationError("'scheduled_for' must be an ISO-8601 timestamp")
            try:
                scheduled_for = parse_iso(scheduled_for)
            except ValueError:
                raise ValidationError("'scheduled_for' must be an ISO-8601 timestamp")

        job = _queue().create_job(
            owner_id,
            job_type,
            payload=payload,
            priority=priority,
            max_attempts=max_attempts,
            timeout_ms=timeout_ms,
            scheduled_for=scheduled_for,
        )
        return jsonify(job.model_dump()), 201

    @flask_app.route('/api/jobs/<job_id>', methods=['GET'])
    @limiter_instance.limit(lambda: current_app.config["STATUS_RATE_LIMIT"])
    def get_job(job_id: str):
        """
        Get the status of a job.

        Raises:
            NotFoundError: If job with given ID does not exist
        """
        job = _queue().get_job(job_id)
        if job is None:
            raise NotFoundError("Job", job_id)
        return jsonify(job.model_dump())

    @flask_app.route('/api/owners/<owner_id>/jobs', methods=['GET'])
    @limiter_instance.limit(lambda: current_app.config["STATUS_RATE_LIMIT"])
    def get_owner_jobs(owner_id: str):
        """Jobs of one owner, newest first (?status=a,b&limit=n)."""
        jobs = _queue().get_owner_jobs(owner_id, statuses=_list_arg("status"), limit=_int_arg("limit", 20))
        return jsonify({"jobs": [job.model_dump() for job in jobs], "count": len(jobs)})

    @flask_app.route('/api/jobs/<job_id>/cancel', methods=['POST'])
    @limiter_instance.limit(lambda: current_app.config["ENQUEUE_RATE_LIMIT"])
    def cancel_job(job_id: str):
        """
        Cancel a job that has not started.

        Request body:
            {"owner_id": str}

        Raises:
            NotFoundError: If the job does not exist
            ConflictError: If the job is already running or finished
        """
        owner_id = _json_body().get("owner_id")
        if not owner_id:
            raise ValidationError("'owner_id' is required")
        outcome = _queue().cancel_job(job_id, owner_id)
        if outcome["success"]:
            return jsonify({"success": True, "job_id": job_id})
        if outcome["error"] == "Job not found":
            raise NotFoundError("Job", job_id)
        if outcome["error"] == "Unauthorized":
            raise APIError("Not allowed to cancel this job", "FORBIDDEN", status_code=403)
        raise ConflictError(outcome["error"], details={"job_id": job_id})

    @flask_app.route('/api/productions/<production_id>', methods=['GET'])
    @limiter_instance.limit(lambda: current_app.config["STATUS_RATE_LIMIT"])
    def get_production(production_id: str):
        """Production progress, quality window and error counters."""
        production = _store().get_production(production_id)
        if production is None:
            raise NotFoundError("Production", production_id)
        return jsonify(production.model_dump())

    @flask_app.route('/api/productions/<production_id>/tasks', methods=['GET'])
    @limiter_instance.limit(lambda: current_app.config["STATUS_RATE_LIMIT"])
    def get_production_tasks(production_id: str):
        """Write-tasks of a production in chapter order (?status=a,b)."""
        if _store().get_production(production_id) is None:
            raise NotFoundError("Production", production_id)
        tasks = _store().list_write_tasks(production_id, statuses=_list_arg("status"))
        return jsonify({"tasks": [task.model_dump() for task in tasks], "count": len(tasks)})

    @flask_app.route('/api/errors', methods=['GET'])
    @limiter_instance.limit(lambda: current_app.config["STATUS_RATE_LIMIT"])
    def list_errors():
        """Factory error log, newest first (?production_id=&status=&limit=)."""
        errors = _store().list_factory_errors(
            production_id=request.args.get("production_id") or None,
            status=request.args.get("status") or None,
            limit=_int_arg("limit", 50),
        )
        return jsonify({"errors": [entry.model_dump() for entry in errors], "count": len(errors)})
