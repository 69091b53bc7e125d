"""Shared contract for the idempotent tool result stores.

A slot is keyed by tool name and idempotency key. The first writer claims it
with an ``in_progress`` record that carries an owner token; only that owner
may replace it with the ``completed`` record, so the first successful write
for a key wins and later writers read it back instead of overwriting it.
"""

from __future__ import annotations

import uuid
from typing import Any, Dict, Optional, Protocol, Tuple

from toolflow.storage.models import utcnow_iso

STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"

DEFAULT_IDEMPOTENCY_TTL_SECONDS = 60 * 60 * 24
# An in-progress claim outlives the longest tool timeout but not a crashed worker.
DEFAULT_CLAIM_TTL_SECONDS = 60 * 5


def idempotency_cache_key(tool_name: str, key: str) -> str:
    return f"{tool_name}:{key}"


def in_progress_record(execution_id: Optional[str], tool_use_id: str) -> Dict[str, Any]:
    return {
        "status": STATUS_IN_PROGRESS,
        "owner": uuid.uuid4().hex,
        "execution_id": execution_id,
        "tool_use_id": tool_use_id,
        "claimed_at": utcnow_iso(),
    }


def completed_record(claim: Dict[str, Any], result: Any) -> Dict[str, Any]:
    return {
        "status": STATUS_COMPLETED,
        "owner": claim.get("owner"),
        "execution_id": claim.get("execution_id"),
        "tool_use_id": claim.get("tool_use_id"),
        "result": result,
        "completed_at": utcnow_iso(),
    }


def is_completed(record: Optional[Dict[str, Any]]) -> bool:
    return bool(record) and record.get("status") == STATUS_COMPLETED


class ToolResultStore(Protocol):
    """Key-value medium backing write-tool idempotency."""

    async def acquire_slot(
        self, key: str, record: Dict[str, Any], ttl_seconds: int
    ) -> Tuple[bool, Optional[Dict[str, Any]]]:
        """Claim ``key`` if absent. Returns ``(acquired, existing_record)``."""

    async def get_record(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    async def complete_slot(
        self, key: str, owner: str, record: Dict[str, Any], ttl_seconds: int
    ) -> bool:
        """Store the completed record if ``owner`` still holds the claim."""

    async def release_slot(self, key: str, owner: str) -> None:
        """Drop an in-progress claim after a failed invocation."""

    async def close(self) -> None:
        ...
