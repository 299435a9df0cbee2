from __future__ import annotations

from typing import Optional


def format_number(num: Optional[int]) -> str:
    """Group digits with commas: 1234567 -> "1,234,567"."""
    if not num:
        return "0"
    return f"{int(num):,}"


def short_id(value: Optional[str]) -> str:
    return str(value or "")[:8]
