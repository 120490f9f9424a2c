"""Exception hierarchy for the inkflow service.

Every error carries an ``error_type`` code. Stage endpoints and the completion
signaler forward that code to the orchestrator so a failed workflow records
which class of failure stopped it. FastAPI exception handlers map the classes
to HTTP status codes.
"""
from __future__ import annotations


class WorkflowError(Exception):
    """Base class for failures that terminate a pipeline stage."""

    error_type = "WorkflowError"

    def __init__(self, message: str, *, error_type: str | None = None) -> None:
        super().__init__(message)
        if error_type:
            self.error_type = error_type


class ValidationError(WorkflowError):
    """Raised when required input is missing or malformed."""

    error_type = "ValidationError"


class ExternalServiceError(WorkflowError):
    """Raised when a collaborator (OCR, storage, orchestrator, model provider) fails."""

    error_type = "ExternalServiceError"

    def __init__(self, service: str, cause: str, *, error_type: str | None = None) -> None:
        super().__init__(f"{service} call failed: {cause}", error_type=error_type)
        self.service = service
        self.cause = cause


class EmptyResponseError(ExternalServiceError):
    """Raised when a model provider answers without usable content."""

    error_type = "EmptyResponseError"


class CallbackRejectedError(ExternalServiceError):
    """Raised when the orchestrator refuses a callback (unknown or already consumed token)."""

    error_type = "CallbackRejectedError"


class StateError(WorkflowError):
    """Raised when the job token store is inconsistent with the requested operation."""

    error_type = "StateError"


class DuplicateTokenError(StateError):
    """Raised when a job token already exists for the job id."""

    error_type = "DuplicateTokenError"

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job token already registered for {job_id}")
        self.job_id = job_id


class ProcessingError(WorkflowError):
    """Raised when shard parsing, merging or text extraction fails."""

    error_type = "ProcessingError"


__all__ = [
    "WorkflowError",
    "ValidationError",
    "ExternalServiceError",
    "EmptyResponseError",
    "CallbackRejectedError",
    "StateError",
    "DuplicateTokenError",
    "ProcessingError",
]
