"""Channel provider interface."""

from __future__ import annotations

from typing import Any, Dict, Protocol, runtime_checkable


@runtime_checkable
class ChannelProvider(Protocol):
    """Outbound channel (email, SMS, push, AI) reached by action nodes.

    ``send`` returns a mapping with ``success`` and optionally ``message_id``,
    ``error`` and ``meta``. Implementations raise
    :class:`~marketflow.errors.ProviderError` for transport failures.
    """

    async def send(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def authenticate(self, config: Dict[str, Any]) -> bool:
        ...

    async def test_connection(self) -> bool:
        ...
