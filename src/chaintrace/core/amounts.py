"""
Exact decimal helpers for on-chain amounts.

Amounts travel through the pipeline as strings and are only ever combined
as Decimal. Floats are never used for stored values.
"""
from decimal import Context, Decimal, InvalidOperation, localcontext
from typing import Optional, Union

ZERO = Decimal(0)
# wide enough for any uint256 at any decimals
EXACT = Context(prec=100)
DEFAULT_DUST_THRESHOLD = Decimal("0.000001")


def scale(raw: Union[int, str], decimals: int) -> Decimal:
    """raw integer units -> human units, i.e. raw / 10^decimals."""
    with localcontext(EXACT):
        return Decimal(int(raw)).scaleb(-int(decimals))


def parse_int(value) -> int:
    """Accepts ints, decimal strings and 0x-prefixed hex strings."""
    if value is None or value == "":
        return 0
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text.lower().startswith("0x"):
        return int(text, 16) if len(text) > 2 else 0
    return int(text)


def to_decimal(value: Optional[Union[str, int, Decimal]]) -> Decimal:
    if value is None or value == "":
        return ZERO
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Not a decimal amount: {value!r}") from None


def format_amount(value: Decimal) -> str:
    """
    Plain notation, never an exponent. Zero is "0"; other integral values
    keep one fractional digit ("1.0", "-5.0").
    """
    if value == 0:
        return "0"
    with localcontext(EXACT):
        text = format(value.normalize(), "f")
    if "." not in text:
        text += ".0"
    return text


def is_dust(value: Decimal, threshold: Decimal = DEFAULT_DUST_THRESHOLD) -> bool:
    return abs(value) <= threshold
