"""Fixed-point conversion helpers for values written to storage."""

from datetime import datetime, timezone
from decimal import Decimal, ROUND_DOWN, localcontext

# Enough digits for an 18-decimal price with a large integer part
_WORKING_PRECISION = 78


def to_fixed(value: Decimal | None, decimals: int) -> str | None:
    """Truncate ``value`` to ``decimals`` places and return it as a scaled integer string.

    Extra fractional digits are dropped, never rounded, so ``to_fixed(Decimal("1.9999999"), 6)``
    is ``"1999999"``. ``None`` passes through.
    """
    if value is None:
        return None
    with localcontext() as ctx:
        ctx.prec = _WORKING_PRECISION
        truncated = value.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_DOWN)
        return str(int(truncated.scaleb(decimals)))


def to_sql_date(value: datetime | None) -> datetime | None:
    """Normalize a timestamp to naive UTC with whole seconds."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.replace(microsecond=0)


def utc_now() -> datetime:
    return to_sql_date(datetime.now(timezone.utc))
