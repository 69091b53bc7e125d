from __future__ import annotations

import threading
import time
from collections import Counter
from typing import Any, Callable, Dict, List, Optional

from toolflow.logging import get_logger
from toolflow.service.errors import ConflictError, NotFoundError
from toolflow.storage.models import Execution

logger = get_logger(__name__)

DEFAULT_GRACE_SECONDS = 300.0


class ExecutionRegistry:
    """Concurrent map from execution id to live execution state.

    Terminal executions stay queryable for ``grace_seconds`` after
    :meth:`mark_terminal` so a caller that missed the final progress event can
    still fetch the outcome. Expired entries are dropped lazily on access and
    by :meth:`evict_expired`.
    """

    def __init__(
        self,
        *,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.grace_seconds = grace_seconds
        self._clock = clock
        self._lock = threading.RLock()
        self._entries: Dict[str, Execution] = {}
        self._expires_at: Dict[str, float] = {}

    def _expired(self, execution_id: str, now: float) -> bool:
        expires_at = self._expires_at.get(execution_id)
        return expires_at is not None and expires_at <= now

    def _drop(self, execution_id: str) -> None:
        self._entries.pop(execution_id, None)
        self._expires_at.pop(execution_id, None)

    def register(self, execution_id: str, execution: Execution) -> None:
        with self._lock:
            existing = self._entries.get(execution_id)
            if existing is not None and not existing.is_terminal:
                raise ConflictError(
                    f"Execution '{execution_id}' already exists",
                    detail={"executionId": execution_id, "status": existing.status.value},
                )
            self._drop(execution_id)
            self._entries[execution_id] = execution
        logger.debug("execution_registered", execution_id=execution_id)

    def get(self, execution_id: str) -> Execution:
        with self._lock:
            if self._expired(execution_id, self._clock()):
                self._drop(execution_id)
            execution = self._entries.get(execution_id)
        if execution is None:
            raise NotFoundError(
                f"Execution '{execution_id}' not found", detail={"executionId": execution_id}
            )
        return execution

    def snapshot(self, execution_id: str) -> Dict[str, Any]:
        return self.get(execution_id).snapshot()

    def remove(self, execution_id: str) -> bool:
        with self._lock:
            present = execution_id in self._entries
            self._drop(execution_id)
        return present

    def mark_terminal(self, execution_id: str) -> None:
        """Start the grace period of a finished execution."""
        with self._lock:
            if execution_id in self._entries:
                self._expires_at[execution_id] = self._clock() + self.grace_seconds

    def evict_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [eid for eid in self._entries if self._expired(eid, now)]
            for execution_id in expired:
                self._drop(execution_id)
        if expired:
            logger.info("executions_evicted", count=len(expired))
        return len(expired)

    def list_active(self) -> List[Dict[str, Any]]:
        with self._lock:
            executions = list(self._entries.values())
        return [e.snapshot() for e in executions if not e.is_terminal]

    def live_ids(self) -> List[str]:
        with self._lock:
            return [eid for eid, e in self._entries.items() if not e.is_terminal]

    def statistics(self) -> Dict[str, int]:
        self.evict_expired()
        with self._lock:
            counts = Counter(e.status.value for e in self._entries.values())
        stats = {status: counts.get(status, 0) for status in (
            "idle", "initializing", "iterating", "completed", "error", "cancelled"
        )}
        stats["total"] = sum(counts.values())
        return stats

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, execution_id: object) -> bool:
        with self._lock:
            return execution_id in self._entries and not self._expired(
                execution_id, self._clock()
            )
