import secrets
import time
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, validates

from signoff.database import Base, JSONType, enum_column
from signoff.domain.enums import (
    ApprovalFlow,
    ApprovalPriority,
    ApprovalStatus,
    ApprovalType,
    Lifecycle,
    SignatureType,
)
from signoff.domain.transitions import is_terminal
from signoff.exceptions import ImmutableRecordError

_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_reference(approval_type, now_ms: Optional[int] = None) -> str:
    """``LEA-KBGT6XY-H4P``: type prefix, base36 millisecond clock, 3 random chars."""
    prefix = ApprovalType(approval_type).value.upper()[:3]
    stamp = _base36(now_ms if now_ms is not None else int(time.time() * 1000))
    suffix = "".join(secrets.choice(_BASE36) for _ in range(3))
    return f"{prefix}-{stamp}-{suffix}"


class Approval(Base):
    __tablename__ = "approvals"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    approval_reference: Mapped[Optional[str]] = mapped_column(
        String(50), unique=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    type: Mapped[ApprovalType] = mapped_column(
        enum_column(ApprovalType), nullable=False
    )
    priority: Mapped[ApprovalPriority] = mapped_column(
        enum_column(ApprovalPriority, 20), default=ApprovalPriority.MEDIUM
    )
    flow_type: Mapped[ApprovalFlow] = mapped_column(
        enum_column(ApprovalFlow), default=ApprovalFlow.SINGLE_APPROVER
    )

    # Related business entity
    entity_type: Mapped[Optional[str]] = mapped_column(String(100))
    entity_id: Mapped[Optional[str]] = mapped_column(String(100))
    entity_data: Mapped[Optional[dict]] = mapped_column(JSONType)

    # Workflow state
    status: Mapped[ApprovalStatus] = mapped_column(
        enum_column(ApprovalStatus), default=ApprovalStatus.DRAFT
    )
    current_step: Mapped[int] = mapped_column(Integer, default=1)
    total_steps: Mapped[int] = mapped_column(Integer, default=1)
    approved_count: Mapped[int] = mapped_column(Integer, default=0)
    rejected_count: Mapped[int] = mapped_column(Integer, default=0)

    # Parties
    requester_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    approver_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id")
    )
    delegated_from_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id")
    )
    delegated_to_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id")
    )
    escalated_to_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id")
    )

    # Scope
    organisation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organisations.id"), nullable=False
    )
    branch_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("branches.id")
    )

    deadline: Mapped[Optional[datetime]] = mapped_column(DateTime)
    is_overdue: Mapped[bool] = mapped_column(Boolean, default=False)
    is_urgent: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    signed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    approval_comments: Mapped[Optional[str]] = mapped_column(Text)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text)
    conditions: Mapped[Optional[str]] = mapped_column(Text)

    amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(15, 2))
    currency: Mapped[Optional[str]] = mapped_column(String(3))

    supporting_documents: Mapped[Optional[list]] = mapped_column(JSONType)
    attachments: Mapped[Optional[list]] = mapped_column(JSONType)

    # Signature block
    requires_signature: Mapped[bool] = mapped_column(Boolean, default=False)
    is_signed: Mapped[bool] = mapped_column(Boolean, default=False)
    signature_type: Mapped[Optional[SignatureType]] = mapped_column(
        enum_column(SignatureType, 20)
    )
    signature_url: Mapped[Optional[str]] = mapped_column(Text)
    signature_metadata: Mapped[Optional[dict]] = mapped_column(JSONType)

    # Escalation
    is_escalated: Mapped[bool] = mapped_column(Boolean, default=False)
    escalated_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    escalation_reason: Mapped[Optional[str]] = mapped_column(Text)
    escalation_level: Mapped[int] = mapped_column(Integer, default=0)

    request_source: Mapped[Optional[str]] = mapped_column(String(50))
    custom_fields: Mapped[Optional[dict]] = mapped_column(JSONType)
    # "metadata" is reserved on declarative classes
    extra_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSONType)

    lifecycle: Mapped[Lifecycle] = mapped_column(
        enum_column(Lifecycle, 20), default=Lifecycle.ACTIVE
    )
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    archived_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id")
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    __table_args__ = (
        CheckConstraint("version > 0", name="chk_approvals_version_positive"),
        CheckConstraint(
            "escalation_level >= 0", name="chk_approvals_escalation_level"
        ),
        Index("idx_approvals_org_status", "organisation_id", "status"),
        Index("idx_approvals_requester", "requester_id"),
        Index("idx_approvals_approver", "approver_id", "status"),
        Index("idx_approvals_delegated_to", "delegated_to_id"),
        Index("idx_approvals_branch", "branch_id"),
        Index("idx_approvals_lifecycle", "lifecycle"),
        Index("idx_approvals_deadline", "deadline"),
    )

    @validates("approval_reference")
    def _reference_is_write_once(self, key, value):
        # __dict__ so an expired attribute never triggers a lazy load
        current = self.__dict__.get(key)
        if current is not None and value != current:
            raise ImmutableRecordError(
                "Approval reference cannot be changed once assigned",
                details={"approval_reference": current},
            )
        return value

    @property
    def is_deleted(self) -> bool:
        return Lifecycle(self.lifecycle) == Lifecycle.DELETED

    @property
    def is_archived(self) -> bool:
        return Lifecycle(self.lifecycle) == Lifecycle.ARCHIVED

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status, bool(self.requires_signature))

    def recompute_overdue(self, now: Optional[datetime] = None) -> None:
        """Refresh ``is_overdue``; frozen once the approval is terminal."""
        if self.is_terminal:
            return
        now = now or datetime.utcnow()
        self.is_overdue = bool(self.deadline and now > self.deadline)


@event.listens_for(Approval, "before_insert")
def assign_reference(mapper, connection, target):
    if not target.approval_reference:
        target.approval_reference = generate_reference(target.type)
