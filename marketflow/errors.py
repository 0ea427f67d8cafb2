"""Error taxonomy for marketflow."""

from __future__ import annotations

import builtins
from typing import Any, Dict, List, Optional, Union


class MarketflowError(Exception):
    """Base class for all marketflow errors."""

    def __init__(self, message: str = "", context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serializable representation used by the CLI and execution records."""
        data: Dict[str, Any] = {"type": type(self).__name__, "message": self.message}
        if self.context:
            data["context"] = self.context
        return data


class ValidationError(MarketflowError):
    """Malformed or missing input fields.

    ``errors`` is either a field -> message mapping (workflow definitions) or a
    list of messages (node configuration), always carrying every violation.
    """

    def __init__(
        self,
        message: str,
        errors: Union[Dict[str, str], List[str], None] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, context)
        self.errors = errors if errors is not None else []

    def __str__(self) -> str:
        if not self.errors:
            return self.message
        if isinstance(self.errors, dict):
            details = "; ".join(f"{k}: {v}" for k, v in self.errors.items())
        else:
            details = "; ".join(self.errors)
        return f"{self.message}: {details}"

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["errors"] = self.errors
        return data


class StructureError(MarketflowError):
    """Invalid workflow graph: no trigger, dangling successor, bad branch."""


class NotFoundError(MarketflowError):
    """Unknown workflow, execution, node, node type or provider."""


class StateError(MarketflowError):
    """Operation not valid for the current status."""


class ConflictError(MarketflowError):
    """Operation blocked by dependent records (e.g. active executions)."""


class LimitExceededError(MarketflowError):
    """Per-customer concurrency cap reached."""


class ExecutionTimeoutError(MarketflowError, builtins.TimeoutError):
    """Execution exceeded its wall-clock timeout."""


class ProviderError(MarketflowError):
    """Opaque failure raised by an external channel provider."""

    def __init__(
        self,
        message: str,
        provider_code: str = "",
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, context)
        self.provider_code = provider_code


__all__ = [
    "MarketflowError",
    "ValidationError",
    "StructureError",
    "NotFoundError",
    "StateError",
    "ConflictError",
    "LimitExceededError",
    "ExecutionTimeoutError",
    "ProviderError",
]
