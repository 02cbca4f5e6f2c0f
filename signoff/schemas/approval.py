import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator

from signoff.config import settings
from signoff.domain.enums import (
    ApprovalAction,
    ApprovalFlow,
    ApprovalPriority,
    ApprovalStatus,
    ApprovalType,
    Lifecycle,
    SignatureType,
)

_DOCUMENT_SCHEMES = {"http", "https", "file"}


def _check_document_urls(urls: Optional[list[str]]) -> Optional[list[str]]:
    if urls is None:
        return urls
    cleaned = [u.strip() for u in urls if u and u.strip()]
    if len(cleaned) > settings.MAX_SUPPORTING_DOCUMENTS:
        raise ValueError(
            f"At most {settings.MAX_SUPPORTING_DOCUMENTS} supporting documents are allowed"
        )
    for url in cleaned:
        parsed = urlparse(url)
        if parsed.scheme not in _DOCUMENT_SCHEMES or not (parsed.netloc or parsed.scheme == "file"):
            raise ValueError(f"Invalid document URL: {url}")
    # Duplicates collapse, first occurrence wins
    return list(dict.fromkeys(cleaned))


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    # stored timestamps are naive UTC
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class ApprovalCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    type: ApprovalType
    priority: ApprovalPriority = ApprovalPriority.MEDIUM
    flow_type: ApprovalFlow = ApprovalFlow.SINGLE_APPROVER
    entity_type: Optional[str] = Field(None, max_length=100)
    entity_id: Optional[str] = Field(None, max_length=100)
    entity_data: Optional[dict[str, Any]] = None
    approver_id: Optional[uuid.UUID] = None
    deadline: Optional[datetime] = None
    is_urgent: bool = False
    amount: Optional[Decimal] = Field(None, ge=0, max_digits=15, decimal_places=2)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    supporting_documents: Optional[list[str]] = None
    attachments: Optional[list[Any]] = None
    requires_signature: bool = False
    signature_type: Optional[SignatureType] = None
    conditions: Optional[str] = None
    request_source: Optional[str] = Field(None, max_length=50)
    custom_fields: Optional[dict[str, Any]] = None
    metadata: Optional[dict[str, Any]] = None
    auto_submit: bool = False
    send_notification: bool = True

    @field_validator("supporting_documents")
    @classmethod
    def check_documents(cls, v: Optional[list[str]]) -> Optional[list[str]]:
        return _check_document_urls(v)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if v else v

    @field_validator("deadline")
    @classmethod
    def deadline_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _naive_utc(v)


class ApprovalUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    priority: Optional[ApprovalPriority] = None
    deadline: Optional[datetime] = None
    is_urgent: Optional[bool] = None
    amount: Optional[Decimal] = Field(None, ge=0, max_digits=15, decimal_places=2)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    supporting_documents: Optional[list[str]] = None
    attachments: Optional[list[Any]] = None
    requires_signature: Optional[bool] = None
    conditions: Optional[str] = None
    custom_fields: Optional[dict[str, Any]] = None
    metadata: Optional[dict[str, Any]] = None
    expected_version: Optional[int] = Field(None, ge=1)
    send_notification: bool = True

    # may be omitted but never cleared: the columns are NOT NULL
    @field_validator("title", "priority", "is_urgent", "requires_signature")
    @classmethod
    def not_null(cls, v: Any) -> Any:
        if v is None:
            raise ValueError("cannot be null")
        return v

    @field_validator("supporting_documents")
    @classmethod
    def check_documents(cls, v: Optional[list[str]]) -> Optional[list[str]]:
        return _check_document_urls(v)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if v else v

    @field_validator("deadline")
    @classmethod
    def deadline_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _naive_utc(v)


class ApprovalQuery(BaseModel):
    page: int = Field(1, ge=1)
    limit: int = Field(20, ge=1, le=100)
    search: Optional[str] = None
    type: Optional[ApprovalType] = None
    status: Optional[ApprovalStatus] = None
    priority: Optional[ApprovalPriority] = None
    is_overdue: Optional[bool] = None
    is_urgent: Optional[bool] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    include_deleted: bool = False
    sort_by: str = Field("created_at", pattern="^(created_at|updated_at|deadline|priority|status|amount|title)$")
    sort_order: str = Field("desc", pattern="^(asc|desc)$")

    @field_validator("created_from", "created_to")
    @classmethod
    def range_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _naive_utc(v)


class ApprovalActionRequest(BaseModel):
    action: ApprovalAction
    comments: Optional[str] = Field(None, max_length=2000)
    reason: Optional[str] = Field(None, max_length=2000)
    delegate_to_id: Optional[uuid.UUID] = None
    escalate_to_id: Optional[uuid.UUID] = None
    send_notification: bool = True
    expected_version: Optional[int] = Field(None, ge=1)


class SignRequest(BaseModel):
    signature_type: SignatureType
    signature_url: Optional[str] = None
    signature_data: Optional[str] = None
    certificate_id: Optional[str] = None
    certificate_issuer: Optional[str] = None
    certificate_subject: Optional[str] = None
    certificate_valid_from: Optional[datetime] = None
    certificate_valid_to: Optional[datetime] = None
    certificate_fingerprint: Optional[str] = None
    signature_algorithm: Optional[str] = None
    biometric_data: Optional[dict[str, Any]] = None
    legal_info: Optional[dict[str, Any]] = None
    comments: Optional[str] = None
    expected_version: Optional[int] = Field(None, ge=1)


class BulkActionRequest(BaseModel):
    approval_ids: list[uuid.UUID] = Field(..., min_length=1)
    action: ApprovalAction
    comments: Optional[str] = Field(None, max_length=2000)
    reason: Optional[str] = Field(None, max_length=2000)
    send_notification: bool = True

    @field_validator("approval_ids")
    @classmethod
    def cap_batch(cls, v: list[uuid.UUID]) -> list[uuid.UUID]:
        if len(v) > settings.MAX_BULK_ITEMS:
            raise ValueError(f"At most {settings.MAX_BULK_ITEMS} approvals per bulk action")
        return v


class BulkItemResult(BaseModel):
    id: uuid.UUID
    success: bool
    code: Optional[str] = None
    message: str


class BulkActionResult(BaseModel):
    processed: int
    successful: int
    failed: int
    results: list[BulkItemResult]


class ApprovalResponse(BaseModel):
    id: uuid.UUID
    approval_reference: Optional[str] = None
    title: str
    description: Optional[str] = None
    type: ApprovalType
    priority: ApprovalPriority
    flow_type: ApprovalFlow
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    entity_data: Optional[dict[str, Any]] = None
    status: ApprovalStatus
    current_step: int
    total_steps: int
    approved_count: int
    rejected_count: int
    requester_id: uuid.UUID
    approver_id: Optional[uuid.UUID] = None
    delegated_from_id: Optional[uuid.UUID] = None
    delegated_to_id: Optional[uuid.UUID] = None
    escalated_to_id: Optional[uuid.UUID] = None
    organisation_id: uuid.UUID
    branch_id: Optional[uuid.UUID] = None
    deadline: Optional[datetime] = None
    is_overdue: bool
    is_urgent: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    signed_at: Optional[datetime] = None
    approval_comments: Optional[str] = None
    rejection_reason: Optional[str] = None
    conditions: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    supporting_documents: Optional[list[str]] = None
    attachments: Optional[list[Any]] = None
    requires_signature: bool
    is_signed: bool
    signature_type: Optional[SignatureType] = None
    signature_url: Optional[str] = None
    signature_metadata: Optional[dict[str, Any]] = None
    is_escalated: bool
    escalated_at: Optional[datetime] = None
    escalation_reason: Optional[str] = None
    escalation_level: int
    request_source: Optional[str] = None
    custom_fields: Optional[dict[str, Any]] = None
    metadata: Optional[dict[str, Any]] = Field(None, validation_alias="extra_metadata")
    lifecycle: Lifecycle
    archived_at: Optional[datetime] = None
    archived_by: Optional[uuid.UUID] = None
    deleted_at: Optional[datetime] = None
    version: int

    model_config = {"from_attributes": True, "populate_by_name": True}


class ApprovalStatsSummary(BaseModel):
    total: int
    pending: int
    approved: int
    rejected: int
    overdue: int


class ApprovalStats(BaseModel):
    summary: ApprovalStatsSummary
    by_type: dict[str, int]
    by_status: dict[str, int]
    recent_activity: int
    can_approve: bool


class ApprovalHistoryResponse(BaseModel):
    id: uuid.UUID
    approval_id: uuid.UUID
    action: ApprovalAction
    from_status: Optional[ApprovalStatus] = None
    to_status: ApprovalStatus
    actor_id: Optional[uuid.UUID] = None
    comments: Optional[str] = None
    source: Optional[str] = None
    metadata: Optional[dict[str, Any]] = Field(None, validation_alias="extra_metadata")
    is_system_action: bool
    created_at: datetime

    model_config = {"from_attributes": True, "populate_by_name": True}


class ApprovalSignatureResponse(BaseModel):
    id: uuid.UUID
    approval_id: uuid.UUID
    signer_id: uuid.UUID
    signature_type: SignatureType
    signature_url: Optional[str] = None
    signed_at: datetime
    certificate_id: Optional[str] = None
    certificate_issuer: Optional[str] = None
    certificate_subject: Optional[str] = None
    certificate_valid_from: Optional[datetime] = None
    certificate_valid_to: Optional[datetime] = None
    certificate_fingerprint: Optional[str] = None
    signature_algorithm: Optional[str] = None
    ip_address: Optional[str] = None
    is_valid: bool
    validated_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    revocation_reason: Optional[str] = None

    model_config = {"from_attributes": True}
