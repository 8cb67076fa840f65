"""
History eviction policy.

Pure functions over a list of conversations:
  1. hard limit: keep at most max_conversations, newest first
  2. soft limit: once within reach of the cap, trim down to the cleanup target
     so we don't evict one conversation on every single save
  3. byte budget: while the serialized history is over threshold_bytes, drop
     the oldest

The output is always a prefix of the timestamp-descending sort, so applying
the policy twice changes nothing.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import Any

from switchboard.models import Conversation

SESSIONS_KEY = "sessions"

# '{"sessions":[' + ... + ']}'
_ENVELOPE_BYTES = len(json.dumps({SESSIONS_KEY: []}, separators=(",", ":")).encode("utf-8"))


@dataclass(frozen=True)
class StoragePolicy:
    max_conversations: int = 100
    soft_limit_ratio: float = 0.9
    cleanup_target_ratio: float = 0.85
    storage_threshold_ratio: float = 0.8
    quota_bytes: int = 50 * 1024 * 1024

    @property
    def max_kept(self) -> int:
        return max(1, self.max_conversations)

    @property
    def soft_limit(self) -> int:
        return max(1, math.floor(self.max_kept * self.soft_limit_ratio))

    @property
    def cleanup_target(self) -> int:
        return max(1, math.floor(self.max_kept * self.cleanup_target_ratio))

    @property
    def threshold_bytes(self) -> int:
        return math.floor(self.quota_bytes * self.storage_threshold_ratio)


@dataclass
class EvictionResult:
    conversations: list[Conversation]
    removed_count: int = 0
    reasons: list[str] = field(default_factory=list)


def estimate_bytes(value: Any) -> int:
    """UTF-8 length of the compact JSON encoding."""
    return len(json.dumps(value, separators=(",", ":"), ensure_ascii=False).encode("utf-8"))


def sort_by_timestamp(conversations: list[Conversation]) -> list[Conversation]:
    """Newest first; stable, so equal timestamps keep their input order."""
    return sorted(
        conversations,
        key=lambda c: c.timestamp if isinstance(c.timestamp, int) else 0,
        reverse=True,
    )


def apply_storage_policy(
    conversations: list[Conversation],
    policy: StoragePolicy = StoragePolicy(),
    threshold_bytes: int | None = None,
) -> EvictionResult:
    """
    Evict conversations per `policy`.

    threshold_bytes=None skips the byte budget (usage is known to be low).
    """
    kept = sort_by_timestamp(conversations)
    reasons: list[str] = []

    if len(kept) > policy.max_kept:
        kept = kept[: policy.max_kept]
        reasons.append("hard-limit")

    if len(kept) >= policy.soft_limit and len(kept) > policy.cleanup_target:
        kept = kept[: policy.cleanup_target]
        reasons.append("near-limit")

    if threshold_bytes is not None and threshold_bytes > 0 and kept:
        sizes = [estimate_bytes(c.to_dict()) for c in kept]
        # items + separating commas + envelope
        total = sum(sizes) + max(0, len(sizes) - 1) + _ENVELOPE_BYTES
        trimmed = False
        while kept and total > threshold_bytes:
            kept.pop()
            total -= sizes.pop() + (1 if sizes else 0)
            trimmed = True
        if trimmed:
            reasons.append("storage-threshold")

    return EvictionResult(
        conversations=kept,
        removed_count=len(conversations) - len(kept),
        reasons=reasons,
    )
