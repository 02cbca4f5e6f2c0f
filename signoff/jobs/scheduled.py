# signoff/jobs/scheduled.py
"""
Endpoints an external scheduler calls on a timer.

    POST /internal/jobs/refresh-overdue   every 15 minutes

Callers authenticate with the ``X-Internal-Secret`` header.
"""

import hmac

from fastapi import APIRouter, Depends, HTTPException, Request, status
import structlog

from signoff.config import settings
from signoff.dependencies import get_workflow
from signoff.services.approval_service import ApprovalWorkflow

logger = structlog.get_logger()
router = APIRouter()


async def _require_internal_auth(request: Request):
    secret = settings.INTERNAL_JOB_SECRET
    if not secret:
        # open only on a local debug server
        if settings.DEBUG and not settings.is_production:
            return
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="INTERNAL_JOB_SECRET is not configured",
        )
    provided = request.headers.get("X-Internal-Secret") or ""
    if not hmac.compare_digest(provided.encode(), secret.encode()):
        logger.warning("internal_auth_failed", path=request.url.path)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


@router.post("/refresh-overdue")
async def refresh_overdue(
    workflow: ApprovalWorkflow = Depends(get_workflow),
    _auth: None = Depends(_require_internal_auth),
):
    """Flag live approvals whose deadline has passed."""
    count = await workflow.refresh_overdue()
    logger.info("job_refresh_overdue_done", flagged=count)
    return {"job": "refresh-overdue", "flagged": count}
