"""Channel provider registry."""

from __future__ import annotations

from typing import Dict, List

from ..errors import NotFoundError
from .base import ChannelProvider
from .inmemory import InMemoryProvider


class ProviderRegistry:
    """Explicit code -> provider table handed to the engine."""

    def __init__(self) -> None:
        self._providers: Dict[str, ChannelProvider] = {}

    def register(self, code: str, provider: ChannelProvider) -> None:
        if not code:
            raise ValueError("Provider code must not be empty")
        self._providers[code] = provider

    def get(self, code: str) -> ChannelProvider:
        try:
            return self._providers[code]
        except KeyError:
            raise NotFoundError(
                f"Provider not found: {code}", {"provider_code": code}
            ) from None

    def exists(self, code: str) -> bool:
        return code in self._providers

    def codes(self) -> List[str]:
        return sorted(self._providers)


__all__ = ["ChannelProvider", "InMemoryProvider", "ProviderRegistry"]
