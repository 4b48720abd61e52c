from __future__ import annotations

# Ticket code helpers.
#
# Wire format: one uppercase letter, a hyphen, three digits ("A-014"). The
# mobile lookup validates against exactly this pattern, so codes must
# round-trip unchanged.

import re

CODE_RE = re.compile(r"^[A-Z]-\d{3}$")
MAX_SEQUENCE = 999

_WS_RE = re.compile(r"\s+")


def format_code(prefix: str, seq: int) -> str:
    if not 1 <= seq <= MAX_SEQUENCE:
        raise ValueError(f"sequence out of range: {seq}")
    return f"{prefix}-{seq:03d}"


def normalize_code(raw: str) -> str:
    """Trim, uppercase and drop all whitespace: ' a - 014 ' -> 'A-014'."""
    return _WS_RE.sub("", raw.strip().upper())


def is_valid_code(code: str) -> bool:
    return bool(CODE_RE.match(code))
