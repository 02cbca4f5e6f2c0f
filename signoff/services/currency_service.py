"""
FX lookups used to bring approval amounts into an organisation's base currency
before the routing engine picks an amount tier.

Resolution order for a pair (A, B) as of a date, per organisation:

    1. A == B                     -> 1
    2. stored A->B                -> rate
    3. stored B->A                -> 1 / rate
    4. A->BASE and BASE->B        -> product (via settings.BASE_CURRENCY)

Each lookup takes the most recent rate whose effective_date is on or before
the date. Nothing found -> None, and the caller decides what to do.
"""

import uuid
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from signoff.config import settings
from signoff.models.fx_rate import FxRate

logger = structlog.get_logger()

_CENT = Decimal("0.01")
_RATE_PLACES = Decimal("0.000001")


async def _stored_rate(
    db: AsyncSession,
    organisation_id: uuid.UUID,
    from_currency: str,
    to_currency: str,
    as_of: date,
) -> Optional[Decimal]:
    result = await db.execute(
        select(FxRate.rate)
        .where(
            FxRate.organisation_id == organisation_id,
            FxRate.from_currency == from_currency,
            FxRate.to_currency == to_currency,
            FxRate.effective_date <= as_of,
        )
        .order_by(FxRate.effective_date.desc())
        .limit(1)
    )
    rate = result.scalar()
    return Decimal(str(rate)) if rate is not None else None


async def _direct_or_inverse(db, organisation_id, from_currency, to_currency, as_of):
    if from_currency == to_currency:
        return Decimal("1")
    rate = await _stored_rate(db, organisation_id, from_currency, to_currency, as_of)
    if rate is not None:
        return rate
    inverse = await _stored_rate(db, organisation_id, to_currency, from_currency, as_of)
    if inverse:
        return (Decimal("1") / inverse).quantize(_RATE_PLACES, rounding=ROUND_HALF_UP)
    return None


async def get_fx_rate(
    db: AsyncSession,
    organisation_id: uuid.UUID,
    from_currency: str,
    to_currency: str,
    as_of: Optional[date] = None,
) -> Optional[Decimal]:
    from_currency = from_currency.upper()
    to_currency = to_currency.upper()
    as_of = as_of or datetime.utcnow().date()

    rate = await _direct_or_inverse(db, organisation_id, from_currency, to_currency, as_of)
    if rate is not None:
        return rate

    pivot = settings.BASE_CURRENCY
    if pivot not in (from_currency, to_currency):
        first = await _direct_or_inverse(db, organisation_id, from_currency, pivot, as_of)
        second = (
            await _direct_or_inverse(db, organisation_id, pivot, to_currency, as_of)
            if first is not None
            else None
        )
        if second is not None:
            return (first * second).quantize(_RATE_PLACES, rounding=ROUND_HALF_UP)

    logger.warning(
        "fx_rate_not_found",
        organisation_id=str(organisation_id),
        from_currency=from_currency,
        to_currency=to_currency,
        as_of=str(as_of),
    )
    return None


def convert(amount: Decimal, rate: Decimal) -> Decimal:
    """Half-up to cents."""
    return (Decimal(str(amount)) * rate).quantize(_CENT, rounding=ROUND_HALF_UP)


async def convert_amount(
    db: AsyncSession,
    organisation_id: uuid.UUID,
    amount: Decimal,
    from_currency: str,
    to_currency: str,
    as_of: Optional[date] = None,
) -> Optional[Decimal]:
    rate = await get_fx_rate(db, organisation_id, from_currency, to_currency, as_of)
    if rate is None:
        return None
    return convert(amount, rate)
