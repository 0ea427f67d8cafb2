"""Delay nodes suspend a run and resume it from the scheduler sweep."""

from datetime import timedelta

import pytest

from marketflow.persistence import ExecutionStatus


@pytest.fixture
def abandoned_cart_definition():
    return {
        "name": "Abandoned cart",
        "type": "cart",
        "nodes": [
            {"id": "start", "type": "trigger", "config": {"event": "cart.abandoned"}, "next_nodes": ["wait"]},
            {
                "id": "wait",
                "type": "delay",
                "config": {"delay_amount": 2, "delay_unit": "hours"},
                "next_nodes": ["check"],
            },
            {
                "id": "check",
                "type": "condition",
                "config": {
                    "conditions": [{"field": "cart_total", "operator": ">=", "value": 100}],
                    "true_node_id": "coupon",
                    "false_node_id": "reminder",
                },
                "next_nodes": ["coupon", "reminder"],
            },
            {
                "id": "coupon",
                "type": "action",
                "config": {"provider_code": "smtp", "subject": "10% off your {{ cart_total }} cart"},
            },
            {
                "id": "reminder",
                "type": "action",
                "config": {"provider_code": "smtp", "subject": "You left something behind"},
            },
        ],
    }


@pytest.mark.asyncio
async def test_delay_schedules_continuation(engine, smtp, clock, abandoned_cart_definition):
    summary = await engine.create_workflow(abandoned_cart_definition)

    first = await engine.execute_workflow(
        summary.workflow_id, {"customer_id": 1, "email": "c@x.io", "cart_total": 150}
    )

    assert first.status == ExecutionStatus.COMPLETED
    assert list(first.result) == ["start", "wait"]
    continuation_id = first.result["wait"].meta["continuation_execution_id"]
    assert smtp.sent == []

    continuation = await engine.get_execution(continuation_id)
    assert continuation.status == ExecutionStatus.SCHEDULED
    assert continuation.scheduled_at == clock() + timedelta(hours=2)
    assert continuation.resume_node_id == "check"
    assert continuation.parent_execution_id == first.execution_id
    assert continuation.context["delayed"] is True

    # Nothing is due yet.
    assert await engine.process_scheduled_executions() == []

    clock.advance(hours=2)
    [resumed] = await engine.process_scheduled_executions()

    assert resumed.execution_id == continuation_id
    assert resumed.status == ExecutionStatus.COMPLETED
    assert list(resumed.result) == ["check", "coupon"]
    assert smtp.sent[0]["subject"] == "10% off your 150 cart"


@pytest.mark.asyncio
async def test_cancelled_continuation_never_runs(engine, smtp, clock, abandoned_cart_definition):
    summary = await engine.create_workflow(abandoned_cart_definition)
    first = await engine.execute_workflow(summary.workflow_id, {"email": "c@x.io", "cart_total": 10})
    continuation_id = first.result["wait"].meta["continuation_execution_id"]

    assert await engine.cancel_execution(continuation_id) is True
    clock.advance(hours=3)

    assert await engine.process_scheduled_executions() == []
    assert smtp.sent == []


@pytest.mark.asyncio
async def test_continuation_counts_toward_active_limit(engine, clock, abandoned_cart_definition):
    summary = await engine.create_workflow(abandoned_cart_definition)
    context = {"customer_id": 2, "email": "c@x.io", "cart_total": 10}

    await engine.execute_workflow(summary.workflow_id, context)
    await engine.execute_workflow(summary.workflow_id, context)

    assert await engine.store.count_active_executions(customer_id="2") == 2
