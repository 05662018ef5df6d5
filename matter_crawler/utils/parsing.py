from __future__ import annotations

import re
from typing import Optional
from urllib.parse import urljoin, urlparse, urlunparse

_EMPTY_MARKERS = {"", "n/a", "-", "none", "unknown"}
_HEX_NORMALIZED = re.compile(r"^0x[0-9A-F]{4}$")
_HEX_PREFIXED = re.compile(r"^0x[0-9a-f]+$", re.IGNORECASE)
_HEX_BARE = re.compile(r"^[0-9a-f]+$", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")


def normalize_url(url: str) -> str:
    """
    Normalize URL by removing fragments and trailing whitespace.
    Product URLs double as primary keys, so two spellings of one page must collapse.
    """
    parts = list(urlparse(url.strip()))
    parts[5] = ""  # strip fragment
    return urlunparse(parts)


def absolute_url(href: str, base_url: str) -> str:
    return normalize_url(urljoin(base_url, href))


def clean_text(value: Optional[str]) -> Optional[str]:
    """Collapse whitespace; empty strings become None."""
    if value is None:
        return None
    text = _WHITESPACE.sub(" ", value).strip()
    return text or None


def normalize_hex_id(value: Optional[str]) -> Optional[str]:
    """
    Normalize a VID/PID to ``0xXXXX`` (upper-case, 4 digits).

    Accepts ``0x``-prefixed or bare hex; digit-only values are read as hex, as they
    appear on the certificate pages. Placeholders such as "n/a", values wider than
    four hex digits and anything unparseable are returned unchanged.
    """
    if value is None or value.strip().lower() in _EMPTY_MARKERS:
        return value
    text = value.strip()
    if _HEX_NORMALIZED.match(text):
        return text

    if _HEX_PREFIXED.match(text):
        digits = text[2:].upper()
    elif _HEX_BARE.match(text):
        digits = text.upper()
    else:
        return value

    digits = digits.lstrip("0")
    if len(digits) > 4:
        return value
    digits = digits.zfill(4)
    return f"0x{digits}"

