"""
Deterministic content digests.

Duplicate-submission signatures and notification ledger keys are built
from these functions, so they must be stable across processes and
releases: canonical JSON in, SHA-256 hex out.
"""

import hashlib
import json
from datetime import date, datetime
from enum import Enum
from typing import Any


def _json_serializer(obj: Any) -> Any:
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: Any) -> str:
    """
    Convert data to a canonical JSON string.

    Keys are sorted, separators carry no whitespace, and enums collapse to
    their values so ``StepStatus.APPROVED`` and ``"approved"`` digest alike.
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
        ensure_ascii=False,
    )


def content_digest(*parts: Any) -> str:
    """SHA-256 over the canonical JSON of *parts* (64 hex characters)."""
    canonical = canonicalize_json(list(parts))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def note_digest(note: str | None) -> str:
    """Digest of a free-text note. Empty and missing notes both map to ``""``."""
    if not note:
        return ""
    return hashlib.sha256(note.encode("utf-8")).hexdigest()
