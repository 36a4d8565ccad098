"""
Fixed-point money helpers.

The ledger stores integer cents. Decimal amounts only exist at the API edge,
where they are quantized to two places before conversion.
"""
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from paycode.errors import InvalidAmount

CENT = Decimal("0.01")


def to_cents(amount: Decimal | int | str) -> int:
    """
    Convert a decimal amount to integer cents.

    Args:
        amount: Amount in currency units (e.g. Decimal("25.00"))

    Returns:
        int: Amount in cents

    Raises:
        InvalidAmount: If the amount is not a finite number
    """
    try:
        value = Decimal(str(amount))
    except InvalidOperation as exc:
        raise InvalidAmount(f"Invalid amount: {amount!r}") from exc
    if not value.is_finite():
        raise InvalidAmount(f"Invalid amount: {amount!r}")
    return int(value.quantize(CENT, rounding=ROUND_HALF_UP) * 100)


def from_cents(cents: int) -> Decimal:
    """Convert integer cents back to a two-place Decimal."""
    return (Decimal(cents) / 100).quantize(CENT)


def require_positive(amount_cents: int) -> int:
    """Reject zero and negative amounts."""
    if amount_cents <= 0:
        raise InvalidAmount(
            "Amount must be positive", {"amount_cents": amount_cents}
        )
    return amount_cents
