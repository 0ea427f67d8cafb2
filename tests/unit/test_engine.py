"""WorkflowEngine lifecycle and traversal tests."""

import asyncio
from datetime import timedelta

import pytest

from marketflow.cache import InMemoryCache
from marketflow.engine import CACHE_PREFIX, EngineServices, WorkflowEngine
from marketflow.errors import (
    ConflictError,
    LimitExceededError,
    NotFoundError,
    StateError,
    StructureError,
    ValidationError,
)
from marketflow.nodes import NODE_TYPES, NodeHandler
from marketflow.persistence import (
    Execution,
    ExecutionStatus,
    InMemoryWorkflowStore,
    SQLiteWorkflowStore,
)


def _chain(*actions):
    """Trigger followed by the given action configs, linked in order."""
    nodes = [{"id": "t", "type": "trigger", "config": {"event": "order.created"}, "next_nodes": []}]
    for index, config in enumerate(actions, start=1):
        nodes[-1]["next_nodes"] = [f"a{index}"]
        nodes.append({"id": f"a{index}", "type": "action", "config": config, "next_nodes": []})
    return {"name": "Chain", "type": "order", "nodes": nodes}


SEND = {"provider_code": "smtp", "subject": "Hi"}
BROKEN = {"provider_code": "broken", "subject": "Hi", "retry_delay": 0}


@pytest.mark.asyncio
async def test_create_workflow_persists_and_caches(engine, store, email_definition):
    summary = await engine.create_workflow(email_definition)

    assert summary.name == "Welcome email"
    assert summary.status == "active"
    assert summary.nodes_count == 2
    stored = await store.get_workflow(summary.workflow_id)
    assert stored is not None
    assert [n.id for n in stored.nodes] == ["start", "welcome"]
    assert await engine.cache.get(CACHE_PREFIX + summary.workflow_id) is not None


@pytest.mark.asyncio
async def test_create_workflow_reports_all_missing_fields(engine):
    with pytest.raises(ValidationError) as exc_info:
        await engine.create_workflow({"nodes": []})

    errors = exc_info.value.errors
    assert set(errors) == {"name", "type", "nodes"}


@pytest.mark.asyncio
async def test_create_workflow_rejects_too_many_nodes(engine, email_definition):
    engine.settings.max_nodes_per_workflow = 1
    with pytest.raises(ValidationError) as exc_info:
        await engine.create_workflow(email_definition)
    assert "nodes" in exc_info.value.errors


@pytest.mark.asyncio
async def test_create_workflow_without_trigger_persists_nothing(engine, store):
    definition = {
        "name": "No trigger",
        "type": "broken",
        "nodes": [{"id": "a", "type": "action", "config": SEND}],
    }
    with pytest.raises(StructureError):
        await engine.create_workflow(definition)
    assert await store.list_workflows() == []


@pytest.mark.asyncio
async def test_create_workflow_rejects_dangling_successor(engine, email_definition):
    email_definition["nodes"][1]["next_nodes"] = ["missing"]
    with pytest.raises(StructureError, match="missing"):
        await engine.create_workflow(email_definition)


@pytest.mark.asyncio
async def test_create_workflow_rejects_duplicate_node_ids(engine, email_definition):
    email_definition["nodes"][1]["id"] = "start"
    email_definition["nodes"][0]["next_nodes"] = []
    with pytest.raises(StructureError, match="Duplicate"):
        await engine.create_workflow(email_definition)


@pytest.mark.asyncio
async def test_update_workflow_replaces_definition_and_cache(engine, email_definition):
    summary = await engine.create_workflow(email_definition)
    email_definition["name"] = "Welcome v2"
    email_definition["status"] = "inactive"

    updated = await engine.update_workflow(summary.workflow_id, email_definition)

    assert updated.name == "Welcome v2"
    assert updated.created_at == summary.created_at
    workflow = await engine.get_workflow(summary.workflow_id)
    assert workflow.name == "Welcome v2"
    assert workflow.status.value == "inactive"


@pytest.mark.asyncio
async def test_update_unknown_workflow_raises_not_found(engine, email_definition):
    with pytest.raises(NotFoundError):
        await engine.update_workflow("nope", email_definition)


@pytest.mark.asyncio
async def test_get_workflow_falls_back_to_store(engine, email_definition):
    summary = await engine.create_workflow(email_definition)
    await engine.cache.delete(CACHE_PREFIX + summary.workflow_id)

    workflow = await engine.get_workflow(summary.workflow_id)

    assert workflow.workflow_id == summary.workflow_id
    assert await engine.cache.get(CACHE_PREFIX + summary.workflow_id) is not None
    assert await engine.get_workflow("unknown") is None


@pytest.mark.asyncio
async def test_delete_workflow_blocked_by_running_execution(engine, store, email_definition, clock):
    summary = await engine.create_workflow(email_definition)
    await store.insert_execution(
        Execution(
            execution_id="running-1",
            workflow_id=summary.workflow_id,
            status=ExecutionStatus.RUNNING,
            started_at=clock(),
        )
    )

    with pytest.raises(ConflictError):
        await engine.delete_workflow(summary.workflow_id)

    stored = await store.get_workflow(summary.workflow_id)
    assert stored is not None
    assert stored.name == "Welcome email"


@pytest.mark.asyncio
async def test_delete_workflow_removes_definition_and_cache(engine, store, email_definition):
    summary = await engine.create_workflow(email_definition)
    await engine.execute_workflow(summary.workflow_id, {"email": "a@b.com"})

    await engine.delete_workflow(summary.workflow_id)

    assert await store.get_workflow(summary.workflow_id) is None
    assert await engine.get_workflow(summary.workflow_id) is None
    assert await store.list_executions(workflow_id=summary.workflow_id) == []
    with pytest.raises(NotFoundError):
        await engine.delete_workflow(summary.workflow_id)


@pytest.mark.asyncio
async def test_execute_chain_stops_at_failing_node(engine, broken):
    summary = await engine.create_workflow(_chain(BROKEN, SEND))

    execution = await engine.execute_workflow(summary.workflow_id, {"customer_id": 1})

    assert execution.status == ExecutionStatus.FAILED
    assert list(execution.result) == ["t", "a1"]
    assert execution.result["a1"].success is False
    assert "connection refused" in execution.error
    assert broken.calls == 1


@pytest.mark.asyncio
async def test_execute_merges_outputs_into_context(engine):
    summary = await engine.create_workflow(_chain(SEND, SEND))

    execution = await engine.execute_workflow(summary.workflow_id, {"customer_id": 7, "email": "x@y.z"})

    assert execution.status == ExecutionStatus.COMPLETED
    assert list(execution.result) == ["t", "a1", "a2"]
    assert execution.context["trigger_event"] == "order.created"
    assert execution.context["provider"] == "smtp"
    assert execution.context["message_id"] == execution.result["a2"].output["message_id"]
    assert execution.customer_id == "7"
    assert execution.completed_at is not None


@pytest.mark.asyncio
async def test_execute_unknown_or_inactive_workflow(engine, email_definition):
    with pytest.raises(NotFoundError):
        await engine.execute_workflow("missing", {})

    email_definition["status"] = "inactive"
    summary = await engine.create_workflow(email_definition)
    with pytest.raises(StateError):
        await engine.execute_workflow(summary.workflow_id, {})


@pytest.mark.asyncio
async def test_execute_enforces_customer_limit(engine, email_definition, clock):
    summary = await engine.create_workflow(email_definition)
    when = clock() + timedelta(hours=1)
    await engine.schedule_workflow(summary.workflow_id, {"customer_id": 9}, when)
    await engine.schedule_workflow(summary.workflow_id, {"customer_id": 9}, when)

    with pytest.raises(LimitExceededError):
        await engine.execute_workflow(summary.workflow_id, {"customer_id": 9})

    other = await engine.execute_workflow(summary.workflow_id, {"customer_id": 10, "email": "o@x.io"})
    assert other.status == ExecutionStatus.COMPLETED
    anonymous = await engine.execute_workflow(summary.workflow_id, {"email": "o@x.io"})
    assert anonymous.status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_unknown_node_type_fails_execution(engine):
    definition = _chain(SEND)
    definition["nodes"][1]["type"] = "teleport"
    summary = await engine.create_workflow(definition)

    execution = await engine.execute_workflow(summary.workflow_id, {})

    assert execution.status == ExecutionStatus.FAILED
    assert "Unknown node type: teleport" in execution.error


@pytest.mark.asyncio
async def test_execution_timeout_is_checked_between_steps(store, providers, clock, settings):
    class SlowNode(NodeHandler):
        node_type = "slow"

        async def execute_node(self, context):
            clock.advance(seconds=301)
            return {"output": {"slow": True}}

    services = EngineServices(
        store=store,
        cache=InMemoryCache(),
        providers=providers,
        node_types={**NODE_TYPES, "slow": SlowNode},
        settings=settings,
        clock=clock,
    )
    engine = WorkflowEngine(services)
    definition = {
        "name": "Slow",
        "type": "test",
        "nodes": [
            {"id": "t", "type": "trigger", "config": {"event": "x"}, "next_nodes": ["s"]},
            {"id": "s", "type": "slow", "next_nodes": ["a"]},
            {"id": "a", "type": "action", "config": SEND},
        ],
    }
    summary = await engine.create_workflow(definition)

    execution = await engine.execute_workflow(summary.workflow_id, {})

    assert execution.status == ExecutionStatus.FAILED
    assert "timeout" in execution.error
    assert "a" not in execution.result


@pytest.mark.asyncio
async def test_condition_selects_declared_branch(engine):
    definition = {
        "name": "Branching",
        "type": "cart",
        "nodes": [
            {"id": "t", "type": "trigger", "config": {"event": "cart.abandoned"}, "next_nodes": ["c"]},
            {
                "id": "c",
                "type": "condition",
                "config": {
                    "conditions": [{"field": "cart_total", "operator": ">=", "value": 100}],
                    "true_node_id": "vip",
                    "false_node_id": "regular",
                },
                "next_nodes": ["regular", "vip"],
            },
            {"id": "regular", "type": "action", "config": SEND},
            {"id": "vip", "type": "action", "config": SEND},
        ],
    }
    summary = await engine.create_workflow(definition)

    big = await engine.execute_workflow(summary.workflow_id, {"cart_total": 250})
    small = await engine.execute_workflow(summary.workflow_id, {"cart_total": 20})

    assert list(big.result) == ["t", "c", "vip"]
    assert list(small.result) == ["t", "c", "regular"]


def _condition(config, next_nodes):
    return {
        "name": "Branching",
        "type": "cart",
        "nodes": [
            {"id": "t", "type": "trigger", "config": {"event": "cart.abandoned"}, "next_nodes": ["c"]},
            {"id": "c", "type": "condition", "config": config, "next_nodes": next_nodes},
            {"id": "coupon", "type": "action", "config": SEND},
            {"id": "done", "type": "action", "config": SEND},
        ],
    }


BIG_CART = [{"field": "cart_total", "operator": ">=", "value": 100}]


@pytest.mark.asyncio
async def test_false_condition_without_false_branch_ends_run(engine, smtp):
    summary = await engine.create_workflow(
        _condition({"conditions": BIG_CART, "true_node_id": "coupon"}, ["coupon"])
    )

    small = await engine.execute_workflow(summary.workflow_id, {"cart_total": 10})
    big = await engine.execute_workflow(summary.workflow_id, {"cart_total": 150})

    assert small.status == ExecutionStatus.COMPLETED
    assert list(small.result) == ["t", "c"]
    assert small.result["c"].output == {"condition_result": False}
    assert list(big.result) == ["t", "c", "coupon"]
    assert len(smtp.sent) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "config, next_nodes",
    [
        ({"conditions": BIG_CART, "true_node_id": "coupon"}, ["coupon", "done"]),
        ({"conditions": BIG_CART}, ["coupon", "done"]),
        ({"conditions": BIG_CART, "true_node_id": "done"}, ["coupon"]),
        ({"conditions": BIG_CART, "true_node_id": "coupon", "false_node_id": "done"}, ["coupon"]),
    ],
)
async def test_condition_branches_must_be_successors(engine, config, next_nodes):
    with pytest.raises(StructureError):
        await engine.create_workflow(_condition(config, next_nodes))


@pytest.mark.asyncio
async def test_update_rejects_unreachable_branch(engine):
    summary = await engine.create_workflow(
        _condition({"conditions": BIG_CART, "true_node_id": "coupon"}, ["coupon"])
    )

    with pytest.raises(StructureError):
        await engine.update_workflow(
            summary.workflow_id,
            _condition({"conditions": BIG_CART, "false_node_id": "done"}, ["coupon"]),
        )


class JumpNode(NodeHandler):
    node_type = "jump"

    async def execute_node(self, context):
        return {"output": {"selected_next_node_id": context["target"]}}


class BadDelayNode(NodeHandler):
    node_type = "bad_delay"

    async def execute_node(self, context):
        return {"output": {"delayed_until": context["until"]}}


@pytest.fixture
def custom_engine(store, providers, settings, clock):
    services = EngineServices(
        store=store,
        cache=InMemoryCache(),
        providers=providers,
        node_types={**NODE_TYPES, "jump": JumpNode, "bad_delay": BadDelayNode},
        settings=settings,
        clock=clock,
    )
    return WorkflowEngine(services)


def _single(node_type):
    return {
        "name": "Custom",
        "type": "test",
        "nodes": [
            {"id": "t", "type": "trigger", "config": {"event": "x"}, "next_nodes": ["n"]},
            {"id": "n", "type": node_type, "next_nodes": ["a"]},
            {"id": "a", "type": "action", "config": SEND},
            {"id": "elsewhere", "type": "action", "config": SEND},
        ],
    }


@pytest.mark.asyncio
async def test_selected_node_outside_successors_fails_execution(custom_engine):
    summary = await custom_engine.create_workflow(_single("jump"))

    execution = await custom_engine.execute_workflow(summary.workflow_id, {"target": "elsewhere"})

    assert execution.status == ExecutionStatus.FAILED
    assert "not one of its successors" in execution.error
    assert "elsewhere" not in execution.result


@pytest.mark.asyncio
@pytest.mark.parametrize("until", ["tomorrow", 1700000000])
async def test_malformed_delayed_until_fails_execution(custom_engine, until):
    summary = await custom_engine.create_workflow(_single("bad_delay"))

    execution = await custom_engine.execute_workflow(summary.workflow_id, {"until": until})

    assert execution.status == ExecutionStatus.FAILED
    assert "Node n returned an invalid delayed_until" in execution.error
    assert "a" not in execution.result
    assert await custom_engine.list_executions(status="scheduled") == []


@pytest.mark.asyncio
async def test_schedule_requires_future_time(engine, email_definition, clock):
    summary = await engine.create_workflow(email_definition)

    with pytest.raises(ValidationError):
        await engine.schedule_workflow(summary.workflow_id, {}, clock())
    with pytest.raises(NotFoundError):
        await engine.schedule_workflow("missing", {}, clock() + timedelta(minutes=5))

    execution = await engine.schedule_workflow(summary.workflow_id, {}, clock() + timedelta(minutes=5))
    assert execution.status == ExecutionStatus.SCHEDULED
    assert execution.result == {}


@pytest.mark.asyncio
async def test_cancel_only_from_scheduled(engine, store, email_definition, clock):
    summary = await engine.create_workflow(email_definition)
    scheduled = await engine.schedule_workflow(summary.workflow_id, {}, clock() + timedelta(minutes=5))
    await store.insert_execution(
        Execution(
            execution_id="running-1",
            workflow_id=summary.workflow_id,
            status=ExecutionStatus.RUNNING,
        )
    )

    assert await engine.cancel_execution("running-1") is False
    assert (await store.get_execution("running-1")).status == ExecutionStatus.RUNNING

    assert await engine.cancel_execution(scheduled.execution_id) is True
    assert (await store.get_execution(scheduled.execution_id)).status == ExecutionStatus.CANCELLED
    assert await engine.cancel_execution(scheduled.execution_id) is False
    assert await engine.cancel_execution("unknown") is False


@pytest.mark.asyncio
async def test_process_scheduled_executions_runs_due_items(engine, email_definition, clock):
    summary = await engine.create_workflow(email_definition)
    due = await engine.schedule_workflow(
        summary.workflow_id, {"email": "a@b.com"}, clock() + timedelta(minutes=1)
    )
    later = await engine.schedule_workflow(summary.workflow_id, {}, clock() + timedelta(hours=2))
    cancelled = await engine.schedule_workflow(summary.workflow_id, {}, clock() + timedelta(minutes=1))
    await engine.cancel_execution(cancelled.execution_id)

    clock.advance(minutes=5)
    processed = await engine.process_scheduled_executions()

    assert [e.execution_id for e in processed] == [due.execution_id]
    assert processed[0].status == ExecutionStatus.COMPLETED
    assert (await engine.get_execution(later.execution_id)).status == ExecutionStatus.SCHEDULED
    assert (await engine.get_execution(cancelled.execution_id)).status == ExecutionStatus.CANCELLED


@pytest.mark.asyncio
async def test_process_scheduled_fails_items_of_inactive_workflows(engine, email_definition, clock):
    summary = await engine.create_workflow(email_definition)
    execution = await engine.schedule_workflow(summary.workflow_id, {}, clock() + timedelta(minutes=1))
    email_definition["status"] = "inactive"
    await engine.update_workflow(summary.workflow_id, email_definition)

    clock.advance(minutes=2)
    processed = await engine.process_scheduled_executions()

    assert processed[0].execution_id == execution.execution_id
    assert processed[0].status == ExecutionStatus.FAILED
    assert "inactive" in processed[0].error


@pytest.mark.asyncio
async def test_trigger_workflows_by_event_is_fail_soft(engine, email_definition):
    ok = await engine.create_workflow(email_definition)
    stale = await engine.create_workflow(dict(email_definition, name="Stale cache"))
    other = dict(email_definition, name="Other event")
    other["nodes"] = [dict(n) for n in email_definition["nodes"]]
    other["nodes"][0] = dict(other["nodes"][0], config={"event": "order.created"})
    await engine.create_workflow(other)

    # The cached copy says inactive, so executing it raises StateError.
    cached = await engine.cache.get(CACHE_PREFIX + stale.workflow_id)
    cached["status"] = "inactive"
    await engine.cache.set(CACHE_PREFIX + stale.workflow_id, cached)

    executions = await engine.trigger_workflows_by_event(
        "customer.register", {"customer_id": 5, "email": "a@b.com"}
    )

    assert [e.workflow_id for e in executions] == [ok.workflow_id]
    assert executions[0].context["event"] == "customer.register"
    assert executions[0].status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_trigger_matches_custom_event_name(engine, email_definition):
    email_definition["nodes"][0]["config"] = {
        "event": "custom.event",
        "custom_event_name": "loyalty.tier_changed",
    }
    summary = await engine.create_workflow(email_definition)

    executions = await engine.trigger_workflows_by_event("loyalty.tier_changed", {"email": "a@b.com"})

    assert [e.workflow_id for e in executions] == [summary.workflow_id]
    assert executions[0].result["start"].output["trigger_event"] == "loyalty.tier_changed"


@pytest.mark.asyncio
async def test_register_event_listeners_routes_dispatch(engine, dispatcher, email_definition):
    summary = await engine.create_workflow(email_definition)
    engine.register_event_listeners(dispatcher, events=["customer.*"])

    results = await dispatcher.dispatch("customer.register", {"email": "a@b.com"})

    assert len(results) == 1
    assert results[0][0].workflow_id == summary.workflow_id


@pytest.mark.asyncio
async def test_statistics_and_cleanup(engine, email_definition, clock):
    summary = await engine.create_workflow(email_definition)
    await engine.execute_workflow(summary.workflow_id, {"email": "a@b.com"})
    await engine.execute_workflow(summary.workflow_id, {"email": "b@b.com"})
    await engine.schedule_workflow(summary.workflow_id, {}, clock() + timedelta(days=1))

    stats = await engine.get_workflow_statistics(summary.workflow_id)
    assert stats["total_executions"] == 3
    assert stats["completed_executions"] == 2
    assert stats["scheduled_executions"] == 1
    assert stats["success_rate"] == 66.67

    clock.advance(days=31)
    assert await engine.cleanup_old_executions() == 2
    stats = await engine.get_workflow_statistics(summary.workflow_id)
    assert stats["total_executions"] == 1

    with pytest.raises(NotFoundError):
        await engine.get_workflow_statistics("missing")


@pytest.fixture(params=["inmemory", "sqlite"])
def admission_store(request, tmp_path):
    if request.param == "sqlite":
        return SQLiteWorkflowStore(tmp_path / "admission.db")
    return InMemoryWorkflowStore()


@pytest.mark.asyncio
async def test_concurrent_runs_respect_customer_limit(admission_store, providers, settings, clock):
    release = asyncio.Event()

    class GateNode(NodeHandler):
        node_type = "gate"

        async def execute_node(self, context):
            await release.wait()
            return {"output": {"released": True}}

    services = EngineServices(
        store=admission_store,
        cache=InMemoryCache(),
        providers=providers,
        node_types={**NODE_TYPES, "gate": GateNode},
        settings=settings,
        clock=clock,
    )
    engine = WorkflowEngine(services)
    summary = await engine.create_workflow(
        {
            "name": "Gated",
            "type": "test",
            "nodes": [
                {"id": "t", "type": "trigger", "config": {"event": "x"}, "next_nodes": ["g"]},
                {"id": "g", "type": "gate"},
            ],
        }
    )
    attempts = 8
    limited = []

    async def run():
        try:
            return await engine.execute_workflow(summary.workflow_id, {"customer_id": 42})
        except LimitExceededError as exc:
            limited.append(exc)
            return None

    async def open_gate_when_rejected():
        while len(limited) < attempts - settings.max_active_per_customer:
            await asyncio.sleep(0.01)
        release.set()

    outcomes = await asyncio.wait_for(
        asyncio.gather(open_gate_when_rejected(), *(run() for _ in range(attempts))),
        timeout=10,
    )

    admitted = [execution for execution in outcomes[1:] if execution is not None]
    assert len(admitted) == settings.max_active_per_customer
    assert all(execution.status == ExecutionStatus.COMPLETED for execution in admitted)
    assert len(limited) == attempts - settings.max_active_per_customer
    assert len(await engine.list_executions(customer_id="42")) == settings.max_active_per_customer
