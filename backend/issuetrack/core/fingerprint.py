"""Stable identity of an error report, used to group occurrences into issues."""
from __future__ import annotations

import hashlib
from typing import Optional

FINGERPRINT_LENGTH = 16


def first_stack_line(stack: Optional[str]) -> str:
    if not stack:
        return ""
    return stack.split("\n", 1)[0]


def fingerprint(title: str, message: str, stack: Optional[str] = None) -> str:
    """
    Hash title, message and the first stack line into a short hex id.

    Nothing is normalized: two messages that differ only by an embedded
    request id produce different fingerprints, so callers should strip such
    substrings first when they want them grouped.
    """
    content = f"{title}:{message}:{first_stack_line(stack)}"
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:FINGERPRINT_LENGTH]
