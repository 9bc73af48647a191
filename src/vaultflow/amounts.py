import re
from decimal import Decimal, InvalidOperation

import vaultflow.constants as C
from vaultflow.errors import ValidationError

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def is_address(value: str | None) -> bool:
    return bool(value) and bool(_ADDRESS_RE.match(value))


def parse_amount(amount: str, decimals: int, *, chain_id: int | None = None) -> int:
    """Convert a decimal string ("12.5") into token base units.

    Raises ValidationError for empty, non-numeric, negative, zero, or
    over-precise amounts.
    """
    text = str(amount).strip() if amount is not None else ""
    if not text:
        raise ValidationError("Amount is required", chain_id=chain_id)
    try:
        value = Decimal(text)
    except InvalidOperation:
        raise ValidationError(f"Invalid amount: {amount!r}", chain_id=chain_id) from None
    if not value.is_finite():
        raise ValidationError(f"Invalid amount: {amount!r}", chain_id=chain_id)
    if value <= 0:
        raise ValidationError(C.MSG_ZERO_AMOUNT, chain_id=chain_id)

    units = value.scaleb(decimals)
    if units != units.to_integral_value():
        raise ValidationError(f"Amount {amount!r} has more than {decimals} decimal places", chain_id=chain_id)
    return int(units)


def try_parse_amount(amount: str, decimals: int) -> int | None:
    try:
        return parse_amount(amount, decimals)
    except ValidationError:
        return None


def format_units(units: int | str, decimals: int) -> str:
    value = Decimal(int(units)).scaleb(-decimals)
    return format(value.normalize(), "f") if value else "0"
