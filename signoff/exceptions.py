"""
Workflow error taxonomy.

Every error carries a machine-readable ``code`` and the HTTP status the API
layer maps it to. The handlers in ``signoff.main`` render them as
``{"error": {"code": ..., "message": ..., "details": ...}}``.

    WorkflowError
    +-- ValidationError        422  malformed or missing input
    +-- NotFoundError          404  not visible under the caller's scope
    +-- PermissionDeniedError  403  actor lacks the relationship/role
    +-- ConflictError          409  illegal for current status / lifecycle / version
    +-- ImmutableRecordError   409  history or signature rows are append-only
    +-- InfrastructureError    503  store or cache unavailable
"""

from typing import Any, Optional


class WorkflowError(Exception):
    code: str = "WORKFLOW_ERROR"
    status_code: int = 400

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}


class ValidationError(WorkflowError):
    code = "VALIDATION_ERROR"
    status_code = 422


class NotFoundError(WorkflowError):
    code = "NOT_FOUND"
    status_code = 404


class PermissionDeniedError(WorkflowError):
    code = "INSUFFICIENT_PERMISSIONS"
    status_code = 403


class ConflictError(WorkflowError):
    code = "ILLEGAL_TRANSITION"
    status_code = 409


class ImmutableRecordError(WorkflowError):
    code = "IMMUTABILITY_VIOLATION"
    status_code = 409


class InfrastructureError(WorkflowError):
    code = "INFRASTRUCTURE_UNAVAILABLE"
    status_code = 503
