import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    Uuid,
    event,
    inspect,
)
from sqlalchemy.orm import Mapped, mapped_column

from signoff.database import Base, JSONType, enum_column
from signoff.domain.enums import SignatureType
from signoff.exceptions import ImmutableRecordError

# The only columns a recorded signature may still change
REVOCATION_FIELDS = frozenset({"is_valid", "revoked_at", "revocation_reason"})


class ApprovalSignature(Base):
    __tablename__ = "approval_signatures"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    approval_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("approvals.id", ondelete="CASCADE"), nullable=False
    )
    signer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    signature_type: Mapped[SignatureType] = mapped_column(
        enum_column(SignatureType, 20), nullable=False
    )
    signature_url: Mapped[Optional[str]] = mapped_column(Text)
    signature_data: Mapped[Optional[str]] = mapped_column(Text)
    signed_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )

    certificate_id: Mapped[Optional[str]] = mapped_column(String(255))
    certificate_issuer: Mapped[Optional[str]] = mapped_column(String(255))
    certificate_subject: Mapped[Optional[str]] = mapped_column(String(255))
    certificate_valid_from: Mapped[Optional[datetime]] = mapped_column(DateTime)
    certificate_valid_to: Mapped[Optional[datetime]] = mapped_column(DateTime)
    certificate_fingerprint: Mapped[Optional[str]] = mapped_column(String(255))
    signature_algorithm: Mapped[Optional[str]] = mapped_column(String(50))

    biometric_data: Mapped[Optional[dict]] = mapped_column(JSONType)
    legal_info: Mapped[Optional[dict]] = mapped_column(JSONType)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45))
    user_agent: Mapped[Optional[str]] = mapped_column(Text)

    is_valid: Mapped[bool] = mapped_column(Boolean, default=True)
    validated_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    revocation_reason: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        Index("idx_approval_signatures_approval", "approval_id"),
        Index("idx_approval_signatures_signer", "signer_id"),
    )


@event.listens_for(ApprovalSignature, "before_update")
def restrict_signature_update(mapper, connection, target):
    state = inspect(target)
    changed = {
        attr.key for attr in state.attrs if attr.history.has_changes()
    }
    illegal = changed - REVOCATION_FIELDS
    if illegal:
        raise ImmutableRecordError(
            "Only revocation fields of a signature can be changed",
            details={"signature_id": str(target.id), "fields": sorted(illegal)},
        )


@event.listens_for(ApprovalSignature, "before_delete")
def prevent_signature_delete(mapper, connection, target):
    raise ImmutableRecordError(
        "Signatures cannot be deleted",
        details={"signature_id": str(target.id)},
    )
