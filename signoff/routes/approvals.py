"""
Approvals API routes: create and browse approval requests, drive them
through the workflow (submit, decide, sign, withdraw) and manage their
lifecycle (archive, delete).
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
import structlog

from signoff.dependencies import get_workflow
from signoff.domain.actor import Actor
from signoff.domain.enums import ApprovalPriority, ApprovalStatus, ApprovalType
from signoff.middleware.auth import get_current_actor
from signoff.schemas.approval import (
    ApprovalActionRequest,
    ApprovalCreate,
    ApprovalHistoryResponse,
    ApprovalQuery,
    ApprovalResponse,
    ApprovalSignatureResponse,
    ApprovalStats,
    ApprovalUpdate,
    BulkActionRequest,
    BulkActionResult,
    SignRequest,
)
from signoff.schemas.common import ERROR_RESPONSES, PaginatedResponse
from signoff.services.approval_service import ApprovalWorkflow

logger = structlog.get_logger()
router = APIRouter(responses=ERROR_RESPONSES)


class PendingResponse(BaseModel):
    data: list[ApprovalResponse]
    count: int


class SignResponse(BaseModel):
    approval: ApprovalResponse
    signature: ApprovalSignatureResponse


class TransitionBody(BaseModel):
    comments: Optional[str] = None
    expected_version: Optional[int] = None


def _query(
    page: int = Query(1, ge=1, le=1000),
    limit: int = Query(20, ge=1, le=100),
    search: Optional[str] = Query(None, max_length=200),
    type: Optional[ApprovalType] = Query(None),
    status: Optional[ApprovalStatus] = Query(None),
    priority: Optional[ApprovalPriority] = Query(None),
    is_overdue: Optional[bool] = Query(None),
    is_urgent: Optional[bool] = Query(None),
    include_deleted: bool = Query(False),
    sort_by: str = Query("created_at", pattern="^(created_at|updated_at|deadline|priority|status|amount|title)$"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
) -> ApprovalQuery:
    return ApprovalQuery(
        page=page,
        limit=limit,
        search=search,
        type=type,
        status=status,
        priority=priority,
        is_overdue=is_overdue,
        is_urgent=is_urgent,
        include_deleted=include_deleted,
        sort_by=sort_by,
        sort_order=sort_order,
    )


@router.post("", response_model=ApprovalResponse, status_code=201)
async def create_approval(
    body: ApprovalCreate,
    actor: Actor = Depends(get_current_actor),
    workflow: ApprovalWorkflow = Depends(get_workflow),
):
    approval = await workflow.create(body, actor)
    return ApprovalResponse.model_validate(approval)


@router.get("", response_model=PaginatedResponse[ApprovalResponse])
async def list_approvals(
    query: ApprovalQuery = Depends(_query),
    actor: Actor = Depends(get_current_actor),
    workflow: ApprovalWorkflow = Depends(get_workflow),
):
    """List approvals visible to the caller."""
    items, total = await workflow.list(query, actor)
    return PaginatedResponse.page_of(items, query.page, query.limit, total)


@router.get("/pending", response_model=PendingResponse)
async def pending_approvals(
    actor: Actor = Depends(get_current_actor),
    workflow: ApprovalWorkflow = Depends(get_workflow),
):
    """Approvals waiting on the caller's decision."""
    items = await workflow.pending(actor)
    return PendingResponse(data=items, count=len(items))


@router.get("/my-requests", response_model=PaginatedResponse[ApprovalResponse])
async def my_requests(
    query: ApprovalQuery = Depends(_query),
    actor: Actor = Depends(get_current_actor),
    workflow: ApprovalWorkflow = Depends(get_workflow),
):
    items, total = await workflow.my_requests(query, actor)
    return PaginatedResponse.page_of(items, query.page, query.limit, total)


@router.get("/stats", response_model=ApprovalStats)
async def approval_stats(
    actor: Actor = Depends(get_current_actor),
    workflow: ApprovalWorkflow = Depends(get_workflow),
):
    return await workflow.stats(actor)


@router.post("/bulk-action", response_model=BulkActionResult)
async def bulk_action(
    body: BulkActionRequest,
    actor: Actor = Depends(get_current_actor),
    workflow: ApprovalWorkflow = Depends(get_workflow),
):
    """Apply one action to several approvals; per-item failures are reported, not raised."""
    return await workflow.bulk_action(body, actor)


@router.get("/reference/{reference}", response_model=ApprovalResponse)
async def get_by_reference(
    reference: str,
    actor: Actor = Depends(get_current_actor),
    workflow: ApprovalWorkflow = Depends(get_workflow),
):
    return await workflow.get_by_reference(reference, actor)


@router.get("/{approval_id}", response_model=ApprovalResponse)
async def get_approval(
    approval_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    workflow: ApprovalWorkflow = Depends(get_workflow),
):
    return await workflow.get_one(approval_id, actor)


@router.patch("/{approval_id}", response_model=ApprovalResponse)
async def update_approval(
    approval_id: uuid.UUID,
    body: ApprovalUpdate,
    actor: Actor = Depends(get_current_actor),
    workflow: ApprovalWorkflow = Depends(get_workflow),
):
    """Edit a draft. Only the requester may edit, and only while in DRAFT."""
    approval = await workflow.update(approval_id, body, actor)
    return ApprovalResponse.model_validate(approval)


@router.post("/{approval_id}/submit", response_model=ApprovalResponse)
async def submit_approval(
    approval_id: uuid.UUID,
    body: Optional[TransitionBody] = None,
    actor: Actor = Depends(get_current_actor),
    workflow: ApprovalWorkflow = Depends(get_workflow),
):
    body = body or TransitionBody()
    approval = await workflow.submit(
        approval_id, actor, comments=body.comments, expected_version=body.expected_version
    )
    return ApprovalResponse.model_validate(approval)


@router.post("/{approval_id}/action", response_model=ApprovalResponse)
async def perform_action(
    approval_id: uuid.UUID,
    body: ApprovalActionRequest,
    actor: Actor = Depends(get_current_actor),
    workflow: ApprovalWorkflow = Depends(get_workflow),
):
    approval = await workflow.perform_action(approval_id, body, actor)
    return ApprovalResponse.model_validate(approval)


@router.post("/{approval_id}/sign", response_model=SignResponse)
async def sign_approval(
    approval_id: uuid.UUID,
    body: SignRequest,
    request: Request,
    actor: Actor = Depends(get_current_actor),
    workflow: ApprovalWorkflow = Depends(get_workflow),
):
    approval, signature = await workflow.sign(
        approval_id,
        body,
        actor,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    return SignResponse(
        approval=ApprovalResponse.model_validate(approval),
        signature=ApprovalSignatureResponse.model_validate(signature),
    )


@router.get("/{approval_id}/history", response_model=list[ApprovalHistoryResponse])
async def approval_history(
    approval_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    workflow: ApprovalWorkflow = Depends(get_workflow),
):
    rows = await workflow.history(approval_id, actor)
    return [ApprovalHistoryResponse.model_validate(r) for r in rows]


@router.get("/{approval_id}/signatures", response_model=list[ApprovalSignatureResponse])
async def approval_signatures(
    approval_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    workflow: ApprovalWorkflow = Depends(get_workflow),
):
    rows = await workflow.signatures(approval_id, actor)
    return [ApprovalSignatureResponse.model_validate(r) for r in rows]


@router.post("/{approval_id}/withdraw", response_model=ApprovalResponse)
async def withdraw_approval(
    approval_id: uuid.UUID,
    body: Optional[TransitionBody] = None,
    actor: Actor = Depends(get_current_actor),
    workflow: ApprovalWorkflow = Depends(get_workflow),
):
    body = body or TransitionBody()
    approval = await workflow.withdraw(
        approval_id, actor, comments=body.comments, expected_version=body.expected_version
    )
    return ApprovalResponse.model_validate(approval)


@router.post("/{approval_id}/archive", response_model=ApprovalResponse)
async def archive_approval(
    approval_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    workflow: ApprovalWorkflow = Depends(get_workflow),
):
    approval = await workflow.archive(approval_id, actor)
    return ApprovalResponse.model_validate(approval)


@router.delete("/{approval_id}", response_model=ApprovalResponse)
async def delete_approval(
    approval_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    workflow: ApprovalWorkflow = Depends(get_workflow),
):
    """Soft delete: the approval disappears from reads but stays in the store."""
    approval = await workflow.remove(approval_id, actor)
    return ApprovalResponse.model_validate(approval)
