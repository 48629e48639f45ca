from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union


def parse_amount(value: Union[str, int, float, Decimal]) -> Decimal:
    """
    Parse a positive payment amount like:
    - "150.75"
    - "1,200.5"
    - 150 / 150.75 / Decimal("150.75")

    Returns a Decimal quantized to cents.
    """
    if value is None:
        raise ValueError("parse_amount: value is None")
    if isinstance(value, bool):
        raise ValueError("parse_amount: booleans are not amounts")

    if isinstance(value, Decimal):
        dec = value
    else:
        s = str(value).strip().replace(",", "")
        if not s:
            raise ValueError("parse_amount: empty string")
        try:
            dec = Decimal(s)
        except InvalidOperation as e:
            raise ValueError(f"parse_amount: not a number: {value!r}") from e

    if not dec.is_finite():
        raise ValueError(f"parse_amount: not a finite number: {value!r}")
    dec = dec.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    if dec <= 0:
        raise ValueError(f"parse_amount: amount must be positive (got {value!r})")
    return dec


def format_amount(amount: Decimal) -> str:
    # The portal's amount input rejects thousands separators.
    return f"{amount.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP):.2f}"
