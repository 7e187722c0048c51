"""Error types for the keeper engine.

Registry errors surface to the caller of register/unregister and are mapped to
HTTP responses in the API layer. Everything raised inside a running job is
caught at the tick/event boundary and only reaches the logs.
"""

from __future__ import annotations

from typing import Any, Optional


class KeeperError(Exception):
    """Base class for engine errors."""


class ValidationError(KeeperError):
    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class DuplicateJobError(KeeperError):
    def __init__(self, address: str):
        self.address = address
        super().__init__(f"Upkeep for contract {address} is already registered.")


class NotFoundError(KeeperError):
    def __init__(self, address: str):
        self.address = address
        super().__init__(f"No upkeep registered for contract {address}.")


class ExecutionError(KeeperError):
    """A check or perform step failed for one tick or one event."""

    def __init__(self, message: str, details: Any | None = None):
        self.details = details
        super().__init__(message)


class ProbeFallbackSignal(KeeperError):
    """Internal: the target has no checkLog, retry with checkUpkeep."""


# Structured codes carried by ChainCallError.
UNKNOWN_FUNCTION = "UNKNOWN_FUNCTION"
INVALID_ARGUMENT = "INVALID_ARGUMENT"
CALL_EXCEPTION = "CALL_EXCEPTION"
TRANSACTION_FAILED = "TRANSACTION_FAILED"
RPC_ERROR = "RPC_ERROR"


class ChainCallError(KeeperError):
    def __init__(self, code: str, message: str, data: Any | None = None):
        self.code = code
        self.data = data
        super().__init__(message)
