"""Fixed-point money helpers.

All amounts inside the engine are integer minor units (cents). ``Decimal`` is
only used at the boundary when parsing external strings.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

MINOR_PER_MAJOR = 100


def to_minor_units(amount: str | int | Decimal) -> int:
    """Parse a major-unit amount ("12.34", Decimal("12.34"), 12) into cents."""
    try:
        value = Decimal(str(amount))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {amount!r}") from exc
    if not value.is_finite():
        raise ValueError(f"Invalid amount: {amount!r}")
    cents = (value * MINOR_PER_MAJOR).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(cents)


def format_minor(amount_minor: int) -> str:
    sign = "-" if amount_minor < 0 else ""
    major, minor = divmod(abs(amount_minor), MINOR_PER_MAJOR)
    return f"{sign}${major:,}.{minor:02d}"


def fractional_minor(amount_minor: int) -> int:
    return amount_minor % MINOR_PER_MAJOR


def is_round_amount(amount_minor: int, tolerance_minor: int) -> bool:
    """True when the cents part is within tolerance of a whole unit."""
    frac = fractional_minor(amount_minor)
    return frac <= tolerance_minor or frac >= MINOR_PER_MAJOR - tolerance_minor
