"""Provider that records messages instead of delivering them."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Dict, List

from .base import ChannelProvider

logger = logging.getLogger(__name__)


class InMemoryProvider(ChannelProvider):
    """Simple in-process provider for unit tests and dry runs."""

    def __init__(self, code: str = "inmemory") -> None:
        self.code = code
        self.sent: List[Dict[str, Any]] = []
        self._lock = asyncio.Lock()

    async def send(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        message_id = uuid.uuid4().hex
        async with self._lock:
            self.sent.append(dict(payload, message_id=message_id))
        logger.info("Provider %s recorded message %s", self.code, message_id)
        return {"success": True, "message_id": message_id}

    async def authenticate(self, config: Dict[str, Any]) -> bool:
        return True

    async def test_connection(self) -> bool:
        return True
