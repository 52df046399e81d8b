"""
Error handling utilities for the serial fiction factory.

Provides custom exception classes shared by the job queue, the writer
orchestrator and the status API, plus structured JSON error responses.
"""

import logging
import traceback
from typing import Optional, Dict, Any
from flask import jsonify, request

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Base exception for factory errors."""
    
    def __init__(
        self,
        message: str,
        error_code: str,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize factory error.
        
        Args:
            message: Human-readable error message
            error_code: Machine-readable error code
            status_code: HTTP status code used when surfaced through the API
            details: Additional error details
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}


class ValidationError(APIError):
    """Raised when input validation fails."""
    
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code="VALIDATION_ERROR",
            status_code=400,
            details=details
        )


class NotFoundError(APIError):
    """Raised when a resource is not found."""
    
    def __init__(self, resource_type: str, resource_id: str):
        super().__init__(
            message=f"{resource_type} with ID '{resource_id}' not found.",
            error_code="NOT_FOUND",
            status_code=404,
            details={"resource_type": resource_type, "resource_id": resource_id}
        )


class ConflictError(APIError):
    """Raised when a requested state transition is not allowed."""
    
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code="CONFLICT",
            status_code=409,
            details=details
        )


class RateLimitError(APIError):
    """Raised when rate limit is exceeded."""
    
    def __init__(self, retry_after: Optional[int] = None):
        message = "Rate limit exceeded. Please try again later."
        details = {}
        if retry_after:
            details["retry_after"] = retry_after
            message += f" Retry after {retry_after} seconds."
        
        super().__init__(
            message=message,
            error_code="RATE_LIMIT_EXCEEDED",
            status_code=429,
            details=details
        )


class ServiceUnavailableError(APIError):
    """Raised when an external service is unavailable."""
    
    def __init__(self, service: str, message: Optional[str] = None):
        error_message = message or f"Service '{service}' is currently unavailable."
        super().__init__(
            message=error_message,
            error_code="SERVICE_UNAVAILABLE",
            status_code=503,
            details={"service": service}
        )


class ProviderError(APIError):
    """
    Raised when the text-generation provider fails.
    
    Network problems, rate limits and empty responses are transient and
    retryable through the job queue backoff.
    """
    
    retryable = True
    
    def __init__(
        self,
        message: str,
        provider: str = "unknown",
        error_code: str = "PROVIDER_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        merged = {"provider": provider}
        merged.update(details or {})
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=502,
            details=merged
        )
        self.provider = provider


class ContentBlockedError(ProviderError):
    """Raised when the provider refuses a prompt on content-policy grounds."""
    
    retryable = False
    
    def __init__(self, message: str, provider: str = "unknown", reason: Optional[str] = None):
        super().__init__(
            message=message,
            provider=provider,
            error_code="CONTENT_BLOCKED",
            details={"reason": reason} if reason else None
        )
        self.reason = reason


def is_retryable(error: Exception) -> bool:
    """
    Decide whether a failed job should be retried.
    
    Args:
        error: Exception raised by a job handler
    
    Returns:
        False for content-policy blocks and input/lookup errors, True otherwise
    """
    if isinstance(error, ProviderError):
        return error.retryable
    if isinstance(error, (ValidationError, NotFoundError, ConflictError)):
        return False
    return True


def create_error_response(
    error: Exception,
    include_traceback: bool = False
) -> tuple:
    """
    Create a standardized error response.
    
    Args:
        error: Exception instance
        include_traceback: Whether to include traceback in response (for debugging)
    
    Returns:
        Tuple of (json_response, status_code)
    """
    if isinstance(error, APIError) and error.status_code < 500:
        logger.warning(f"{type(error).__name__} on {request.method} {request.path}: {error.message}")
    else:
        logger.error(
            f"Error: {type(error).__name__}: {str(error)}",
            exc_info=True,
            extra={"path": request.path, "method": request.method}
        )
    
    if isinstance(error, APIError):
        response = {
            "error": error.message,
            "error_code": error.error_code,
        }
        if error.details:
            response["details"] = error.details
        if include_traceback:
            response["traceback"] = traceback.format_exc()
        
        return jsonify(response), error.status_code
    
    error_message = str(error)
    if not include_traceback:
        error_message = "An unexpected error occurred. Check the factory error log for details."
    
    response = {
        "error": error_message,
        "error_code": "INTERNAL_ERROR",
        "error_type": type(error).__name__,
    }
    if include_traceback:
        response["traceback"] = traceback.format_exc()
    
    return jsonify(response), 500


def register_error_handlers(app, debug: bool = False):
    """
    Register error handlers for the Flask app.
    
    Args:
        app: Flask application instance
        debug: Whether to include tracebacks in error responses
    """
    @app.errorhandler(APIError)
    def handle_api_error(error: APIError):
        """Handle APIError exceptions."""
        return create_error_response(error, include_traceback=debug)
    
    @app.errorhandler(404)
    def handle_not_found(error):
        """Handle unknown routes."""
        return create_error_response(
            NotFoundError("Resource", request.path),
            include_traceback=debug
        )
    
    @app.errorhandler(405)
    def handle_method_not_allowed(error):
        """Handle 405 Method Not Allowed errors."""
        return jsonify({
            "error": f"Method '{request.method}' not allowed for this endpoint.",
            "error_code": "METHOD_NOT_ALLOWED",
        }), 405
    
    @app.errorhandler(429)
    def handle_rate_limit(error):
        """Handle 429 Rate Limit errors."""
        return create_error_response(RateLimitError(), include_traceback=debug)
    
    @app.errorhandler(Exception)
    def handle_generic_exception(error: Exception):
        """Handle all other exceptions."""
        return create_error_response(error, include_traceback=debug)
