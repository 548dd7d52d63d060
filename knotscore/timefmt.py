from __future__ import annotations

import re
from typing import Optional

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})\.(\d{2})$")

MAX_INPUT_MINUTES = 20


def format_centiseconds(cs: Optional[int]) -> str:
    """Display form ``mm:ss.cc``. Never use the result for comparisons."""
    if cs is None:
        return ""
    cs = int(cs)
    minutes = cs // 6000
    seconds = (cs // 100) % 60
    centi = cs % 100
    return f"{minutes:02d}:{seconds:02d}.{centi:02d}"


def parse_centiseconds(value: str) -> int:
    value = value.strip()
    if not value:
        raise ValueError("Empty time")
    m = _TIME_RE.fullmatch(value)
    if not m:
        raise ValueError("Invalid time format. Use MM:SS.CC")
    minutes, seconds, centi = (int(g) for g in m.groups())
    if seconds >= 60:
        raise ValueError("Seconds must be below 60")
    if minutes > MAX_INPUT_MINUTES:
        raise ValueError(f"Minutes must be at most {MAX_INPUT_MINUTES}")
    return (minutes * 60 + seconds) * 100 + centi
