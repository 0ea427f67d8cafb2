"""Shared fixtures for marketflow tests."""

from datetime import datetime, timedelta, timezone

import pytest

from marketflow.cache import InMemoryCache
from marketflow.config import WorkflowConfig
from marketflow.engine import EngineServices, WorkflowEngine
from marketflow.errors import ProviderError
from marketflow.events import EventDispatcher
from marketflow.persistence import InMemoryWorkflowStore
from marketflow.providers import InMemoryProvider, ProviderRegistry


class FakeClock:
    """Manually advanced clock; starts on a Wednesday at noon UTC."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 3, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class BrokenProvider:
    """Provider whose transport always fails."""

    def __init__(self) -> None:
        self.calls = 0

    async def send(self, payload):
        self.calls += 1
        raise ProviderError("SMTP connection refused", "broken")

    async def authenticate(self, config):
        return False

    async def test_connection(self):
        return False


class RejectingProvider:
    """Provider that answers but reports the message as rejected."""

    async def send(self, payload):
        return {"success": False, "error": "Mailbox unavailable"}

    async def authenticate(self, config):
        return True

    async def test_connection(self):
        return True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryWorkflowStore()


@pytest.fixture
def smtp():
    return InMemoryProvider("smtp")


@pytest.fixture
def broken():
    return BrokenProvider()


@pytest.fixture
def providers(smtp, broken):
    registry = ProviderRegistry()
    registry.register("smtp", smtp)
    registry.register("broken", broken)
    registry.register("rejecting", RejectingProvider())
    return registry


@pytest.fixture
def dispatcher():
    return EventDispatcher()


@pytest.fixture
def settings():
    return WorkflowConfig(max_active_per_customer=2)


@pytest.fixture
def engine(store, providers, dispatcher, settings, clock):
    services = EngineServices(
        store=store,
        cache=InMemoryCache(),
        providers=providers,
        dispatcher=dispatcher,
        settings=settings,
        clock=clock,
    )
    return WorkflowEngine(services)


@pytest.fixture
def email_definition():
    """trigger(customer.register) -> send email -> end."""
    return {
        "name": "Welcome email",
        "type": "welcome",
        "nodes": [
            {
                "id": "start",
                "type": "trigger",
                "config": {"event": "customer.register"},
                "next_nodes": ["welcome"],
            },
            {
                "id": "welcome",
                "type": "action",
                "config": {
                    "action_type": "send",
                    "provider_code": "smtp",
                    "subject": "Welcome {{ first_name }}",
                    "body_text": "Hello {{first_name}}!",
                },
            },
        ],
    }
