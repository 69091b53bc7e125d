from __future__ import annotations

import json
import threading
import time
from typing import Any, Dict, Optional, Tuple

from toolflow.logging import get_logger
from toolflow.storage.errors import StoreUnavailableError

logger = get_logger(__name__)


class MemoryResultStore:
    """In-process tool result store for tests and single-node sessions.

    Records are kept JSON-encoded, the same way the Redis store keeps them, so
    callers never share mutable state with the store.
    """

    def __init__(self, *, clock=time.monotonic) -> None:
        self._clock = clock
        self._data_lock = threading.RLock()
        self._records: Dict[str, Tuple[str, float]] = {}
        self._closed = False

    def _check_open(self) -> None:
        if self._closed:
            raise StoreUnavailableError("tool result store is closed")

    def _live(self, key: str) -> Optional[str]:
        entry = self._records.get(key)
        if entry is None:
            return None
        payload, expires_at = entry
        if expires_at <= self._clock():
            self._records.pop(key, None)
            return None
        return payload

    async def acquire_slot(
        self, key: str, record: Dict[str, Any], ttl_seconds: int
    ) -> Tuple[bool, Optional[Dict[str, Any]]]:
        self._check_open()
        with self._data_lock:
            existing = self._live(key)
            if existing is not None:
                return (False, json.loads(existing))
            self._records[key] = (json.dumps(record, default=str), self._clock() + ttl_seconds)
            return (True, None)

    async def get_record(self, key: str) -> Optional[Dict[str, Any]]:
        self._check_open()
        with self._data_lock:
            payload = self._live(key)
        return json.loads(payload) if payload is not None else None

    async def complete_slot(
        self, key: str, owner: str, record: Dict[str, Any], ttl_seconds: int
    ) -> bool:
        self._check_open()
        with self._data_lock:
            current = self._live(key)
            if current is None or json.loads(current).get("owner") != owner:
                logger.warning("idempotency_claim_lost", key=key)
                return False
            self._records[key] = (json.dumps(record, default=str), self._clock() + ttl_seconds)
            return True

    async def release_slot(self, key: str, owner: str) -> None:
        self._check_open()
        with self._data_lock:
            current = self._live(key)
            if current is not None and json.loads(current).get("owner") == owner:
                self._records.pop(key, None)

    async def close(self) -> None:
        with self._data_lock:
            self._records.clear()
            self._closed = True
