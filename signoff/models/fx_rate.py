"""
FX rate model: exchange rates an organisation maintains against its base currency.

Each row prices one unit of ``from_currency`` in ``to_currency`` from
``effective_date`` onwards. Routing picks the latest row on or before today.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from signoff.database import Base


class FxRate(Base):
    __tablename__ = "fx_rates"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    organisation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organisations.id"), nullable=False
    )
    from_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    to_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    # Units of to_currency per 1 unit of from_currency
    rate: Mapped[Decimal] = mapped_column(Numeric(20, 6), nullable=False)
    effective_date: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint(
            "organisation_id", "from_currency", "to_currency", "effective_date",
            name="uq_fx_rate_org_pair_date",
        ),
        CheckConstraint("rate > 0", name="ck_fx_rates_rate_positive"),
        Index(
            "idx_fx_rates_lookup",
            "organisation_id", "from_currency", "to_currency", "effective_date",
        ),
    )
