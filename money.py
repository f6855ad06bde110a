from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from errors import ValidationError

AmountInput = Union[str, int, float, Decimal]

# largest value a signed 64-bit INTEGER column holds
MAX_AMOUNT_CENTS = 2**63 - 1


def parse_amount(value: AmountInput, *, allow_zero: bool = True) -> int:
    """Parse a user supplied amount into integer cents.

    Accepts numbers and strings such as ``"12.50"``, ``"12,50"`` or ``"1 200"``.
    Negative, non-numeric and non-finite inputs raise ``ValidationError``.
    """
    if isinstance(value, bool):
        raise ValidationError("Invalid amount")
    if isinstance(value, float):
        clean = repr(value)
    else:
        clean = str(value).strip().replace("₪", "").replace("$", "").replace(" ", "")
        clean = clean.replace(",", ".")
        if clean.count(".") > 1:
            parts = clean.split(".")
            clean = "".join(parts[:-1]) + "." + parts[-1]
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValidationError("Invalid amount") from exc
    if not amount.is_finite():
        raise ValidationError("Invalid amount")
    try:
        cents = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except InvalidOperation as exc:
        raise ValidationError("Amount is too large") from exc
    if cents > MAX_AMOUNT_CENTS:
        raise ValidationError("Amount is too large")
    if cents < 0:
        raise ValidationError("Amount must not be negative")
    if cents == 0 and not allow_zero:
        raise ValidationError("Amount must be greater than 0")
    return cents


def cents_to_decimal(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(Decimal("0.01"))


def format_cents(cents: int) -> str:
    return f"{cents_to_decimal(cents):,.2f}"
