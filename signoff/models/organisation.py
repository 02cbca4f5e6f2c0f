import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import String, DateTime, Index, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from signoff.database import Base, JSONType


class Organisation(Base):
    __tablename__ = "organisations"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    ref: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    base_currency: Mapped[Optional[str]] = mapped_column(String(3))
    status: Mapped[str] = mapped_column(String(20), default="ACTIVE")
    settings: Mapped[Optional[dict]] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )

    __table_args__ = (
        Index("idx_organisations_ref", "ref"),
        Index("idx_organisations_status", "status"),
    )
