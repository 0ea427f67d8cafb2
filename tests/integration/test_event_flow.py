"""Queue -> dispatcher -> engine delivery of business events."""

import pytest

from marketflow.events import EventQueue
from marketflow.persistence import ExecutionStatus, QueueStatus


@pytest.mark.asyncio
async def test_queued_event_starts_matching_workflows(engine, store, dispatcher, smtp, clock, email_definition):
    summary = await engine.create_workflow(email_definition)
    engine.register_event_listeners(dispatcher, events=["customer.*"])
    queue = EventQueue(store, dispatcher, clock=clock)

    entry_id = await queue.push("customer.register", payload={"customer_id": 5, "email": "a@b.com"})
    await queue.push("order.created", payload={"order_id": 1})
    result = await queue.process()

    assert result.processed == 2
    assert (await store.get_queue_entry(entry_id)).status == QueueStatus.PROCESSED
    [execution] = await engine.list_executions(workflow_id=summary.workflow_id)
    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.context["event"] == "customer.register"
    assert len(smtp.sent) == 1


@pytest.mark.asyncio
async def test_listener_failure_is_retried_then_delivered(engine, store, dispatcher, clock, email_definition):
    await engine.create_workflow(email_definition)
    engine.register_event_listeners(dispatcher)
    flaky = {"failures": 1}

    def audit(payload, event_name, source):
        if flaky["failures"]:
            flaky["failures"] -= 1
            raise ConnectionError("audit log offline")

    dispatcher.add_listener("customer.register", audit, priority=10)
    queue = EventQueue(store, dispatcher, clock=clock)
    entry_id = await queue.push("customer.register", payload={"email": "a@b.com"})

    first = await queue.process()
    assert first.retried == 1
    assert await engine.list_executions() == []

    clock.advance(seconds=30)
    second = await queue.process()
    assert second.processed == 1
    entry = await store.get_queue_entry(entry_id)
    assert entry.status == QueueStatus.PROCESSED
    assert entry.attempts == 1
    assert len(await engine.list_executions()) == 1
