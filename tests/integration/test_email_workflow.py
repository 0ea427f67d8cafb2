"""End-to-end: a registration event runs a welcome email workflow."""

import pytest

from marketflow.persistence import ExecutionStatus


@pytest.mark.asyncio
async def test_welcome_email_workflow(engine, smtp, store, email_definition):
    summary = await engine.create_workflow(email_definition)

    execution = await engine.execute_workflow(
        summary.workflow_id, {"customer_id": 5, "email": "a@b.com", "first_name": "Ada"}
    )

    assert execution.status == ExecutionStatus.COMPLETED
    assert len(execution.result) == 2
    assert execution.result["start"].output["trigger_event"] == "customer.register"
    assert execution.result["welcome"].output["provider"] == "smtp"
    assert execution.error is None

    assert len(smtp.sent) == 1
    message = smtp.sent[0]
    assert message["to"] == "a@b.com"
    assert message["subject"] == "Welcome Ada"
    assert message["text_body"] == "Hello Ada!"

    stored = await store.get_execution(execution.execution_id)
    assert stored.status == ExecutionStatus.COMPLETED
    assert stored.customer_id == "5"
    assert stored.result["welcome"].output["message_id"] == message["message_id"]


@pytest.mark.asyncio
async def test_failed_send_is_recorded(engine, store, email_definition):
    email_definition["nodes"][1]["config"]["provider_code"] = "rejecting"
    summary = await engine.create_workflow(email_definition)

    execution = await engine.execute_workflow(summary.workflow_id, {"customer_id": 5})

    assert execution.status == ExecutionStatus.FAILED
    assert execution.error == "Mailbox unavailable"
    assert execution.result["welcome"].success is False
    assert await store.count_active_executions(customer_id="5") == 0
