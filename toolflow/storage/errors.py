from __future__ import annotations

from typing import Any, Dict, Optional


class StoreUnavailableError(Exception):
    """Raised when the tool result store cannot be reached or returns garbage."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class IllegalTransition(Exception):
    """Raised when an execution is moved to a status its current status forbids."""

    def __init__(self, current: str, target: str):
        super().__init__(f"illegal execution transition {current} -> {target}")
        self.current = current
        self.target = target


__all__ = ["StoreUnavailableError", "IllegalTransition"]
