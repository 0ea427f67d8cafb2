"""Example wiring the engine, event queue and scheduler in one process."""

import asyncio
import logging

from marketflow import (
    EngineServices,
    EventDispatcher,
    EventQueue,
    ProviderRegistry,
    Scheduler,
    WorkflowEngine,
    register_callback,
)
from marketflow.providers import InMemoryProvider

ABANDONED_CART = {
    "name": "Abandoned cart",
    "type": "cart",
    "nodes": [
        {"id": "start", "type": "trigger", "config": {"event": "cart.abandoned"}, "next_nodes": ["big_cart"]},
        {
            "id": "big_cart",
            "type": "condition",
            "config": {
                "conditions": [{"field": "cart_total", "operator": ">=", "value": 100}],
                "true_node_id": "coupon",
                "false_node_id": "reminder",
            },
            "next_nodes": ["reminder", "coupon"],
        },
        {
            "id": "coupon",
            "type": "action_custom",
            "config": {"callback": "issue_coupon", "parameters": {"percent": 10}},
            "next_nodes": ["reminder"],
        },
        {
            "id": "reminder",
            "type": "action",
            "config": {
                "provider_code": "smtp",
                "subject": "You left {{ cart_total }} EUR in your cart",
                "body_text": "Use code {{ coupon_code }} at checkout.",
            },
        },
    ],
}


async def issue_coupon(args):
    customer_id = args["context"].get("customer_id")
    return {"coupon_code": f"CART{args['percent']}-{customer_id}"}


async def main():
    logging.basicConfig(level=logging.INFO)

    smtp = InMemoryProvider("smtp")
    providers = ProviderRegistry()
    providers.register("smtp", smtp)
    register_callback("issue_coupon", issue_coupon)

    # In-memory store and cache; pass database_url in config for durability
    services = EngineServices(providers=providers, dispatcher=EventDispatcher())
    engine = WorkflowEngine(services)
    engine.register_event_listeners(events=["cart.*"])
    queue = EventQueue(services.store, services.dispatcher)

    summary = await engine.create_workflow(ABANDONED_CART)
    print(f"Workflow created: {summary.workflow_id}")

    await queue.push("cart.abandoned", payload={"customer_id": 7, "email": "ann@example.com", "cart_total": 180})
    await queue.push("cart.abandoned", payload={"customer_id": 8, "email": "bob@example.com", "cart_total": 25})

    scheduler = Scheduler(engine, queue)
    await scheduler.run_once()

    for execution in await engine.list_executions(workflow_id=summary.workflow_id):
        print(f"Execution {execution.execution_id}: {execution.status.value} via {list(execution.result)}")
    for message in smtp.sent:
        print(f"-> {message['to']}: {message['subject']} / {message['text_body']}")

    print(await engine.get_workflow_statistics(summary.workflow_id))


if __name__ == "__main__":
    asyncio.run(main())
