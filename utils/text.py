"""Small string helpers shared by the worker and generator."""
from __future__ import annotations

import re

ELLIPSIS = "…"

_SEGMENT_BOUNDARY = re.compile(r"\t|\n\n")


def truncate(s: str, max_chars: int = 1500) -> str:
    """Bound diagnostic text (error messages, stack traces) for storage and logs."""
    if len(s) <= max_chars:
        return s
    return s[:max_chars] + f"{ELLIPSIS}[truncated {len(s) - max_chars} chars]"


def clip_reply(s: str, max_chars: int) -> str:
    """Cut reply text to max_chars and mark the cut; text at the bound is untouched."""
    if len(s) <= max_chars:
        return s
    return s[:max_chars] + ELLIPSIS


def split_segments(text: str) -> list[str]:
    """Split a reply into ordered, trimmed, non-empty segments on tab or blank line."""
    return [part.strip() for part in _SEGMENT_BOUNDARY.split(text) if part.strip()]
