import re
import unicodedata
from typing import Any, Optional

from ..logging import get_logger

LOG = get_logger("merchant")

PLACEHOLDER_MERCHANT = "Unspecified"

# Values the scanner or the UI use when no merchant was detected.
PLACEHOLDER_MERCHANTS = frozenset({
    "unspecified",
    "unknown merchant",
    "unknown",
    "not detected",
    "n/a",
})


def clean_merchant(name: Any) -> str:
    """Tidy a merchant name coming from OCR or user input.

    Strips a leading ``merchant:`` label, non-breaking spaces and repeated
    whitespace; keeps casing.
    """
    raw = ("" if name is None else str(name)).strip()
    m = re.match(r'^\s*"?merchant"?\s*:\s*"?(.+?)"?\s*,?\s*$', raw, flags=re.IGNORECASE)
    if m:
        raw = m.group(1).strip()
    raw = raw.replace("\u00A0", " ")
    cleaned = re.sub(r"\s+", " ", unicodedata.normalize("NFC", raw)).strip()
    if cleaned != ("" if name is None else str(name)):
        LOG.debug(f'merchant raw="{name}" cleaned="{cleaned}"')
    return cleaned


def is_placeholder_merchant(name: Optional[str]) -> bool:
    """True when ``name`` is blank or one of the "no merchant" sentinels."""
    cleaned = clean_merchant(name)
    return not cleaned or cleaned.lower() in PLACEHOLDER_MERCHANTS


def default_description(merchant: Optional[str]) -> str:
    return f"Receipt from {clean_merchant(merchant) or PLACEHOLDER_MERCHANT}"
