import re
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

from ..logging import get_logger

_LOG = get_logger("normalize")

# Canonical precedence for the amount of a scan, used for single scans and
# batch review alike.
AMOUNT_PRECEDENCE = ("total", "subtotal", "amount")


def normalize_date_iso(value: Any) -> Optional[str]:
    """Normalize common date strings to ISO YYYY-MM-DD.

    Supports:
    - YYYY-MM-DD passthrough (a trailing time part is dropped)
    - DD.MM.YYYY, D.M.YYYY, DD/MM/YYYY
    - Two-digit years map to 19xx for >=70 else 20xx
    """
    if value is None:
        return None
    v = str(value).strip()
    if not v:
        return None
    m = re.match(r"^(\d{4})-(\d{2})-(\d{2})(?:[T ].*)?$", v)
    if m:
        return f"{m.group(1)}-{m.group(2)}-{m.group(3)}"
    m = re.fullmatch(r"(\d{1,2})[\./](\d{1,2})[\./](\d{2,4})", v)
    if m:
        d, mth, y = m.groups()
        if len(y) == 2:
            y = ("20" + y) if int(y) < 70 else ("19" + y)
        try:
            return date(int(y), int(mth), int(d)).isoformat()
        except ValueError:
            _LOG.debug(f"Ignoring impossible date {v!r}")
            return None
    return None


def today_iso() -> str:
    return date.today().isoformat()


def parse_amount(val: Any) -> Optional[Decimal]:
    """Parse an amount into a Decimal with two decimals.

    Handles '14,70', '14.70', '1.470,00', '1,470.00', ints and floats.
    Returns None for anything that is not a number.
    """
    if val is None or isinstance(val, bool):
        return None
    if isinstance(val, Decimal):
        return val.quantize(Decimal("0.01")) if val.is_finite() else None
    if isinstance(val, (int, float)):
        try:
            d = Decimal(str(val))
        except InvalidOperation:
            return None
        return d.quantize(Decimal("0.01")) if d.is_finite() else None
    s = str(val).strip().replace(" ", "")
    for symbol in ("$", "€", "£", "₹"):
        s = s.replace(symbol, "")
    if not s:
        return None
    has_dot = "." in s
    has_comma = "," in s
    if has_dot and has_comma:
        if re.search(r",\d{1,2}$", s):
            s = s.replace(".", "").replace(",", ".")
        else:
            s = s.replace(",", "")
    elif has_comma:
        if re.search(r",\d{1,2}$", s):
            s = s.replace(",", ".")
        else:
            s = s.replace(",", "")
    if not re.fullmatch(r"-?\d+(?:\.\d+)?", s):
        return None
    try:
        return Decimal(s).quantize(Decimal("0.01"))
    except InvalidOperation:
        return None


def is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str) and not value.strip():
        return False
    return True


def select_amount(fields: Mapping[str, Any]) -> Any:
    """Return the first present of total, subtotal, amount (raw value)."""
    for key in AMOUNT_PRECEDENCE:
        value = fields.get(key)
        if is_present(value):
            return value
    return None
