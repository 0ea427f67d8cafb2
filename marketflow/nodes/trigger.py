from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..contracts import TRIGGER_NODE_TYPE
from .base import NodeConfig, NodeHandler
from .schema import FieldRule

CUSTOM_EVENT = "custom.event"
_CONTEXT_IDS = ("customer_id", "order_id", "product_id", "cart_id")


class TriggerConfig(NodeConfig):
    event: str
    custom_event_name: Optional[str] = None
    description: str = ""


class TriggerNode(NodeHandler):
    """Entry point of a workflow, bound to the event that starts it."""

    node_type = TRIGGER_NODE_TYPE
    schema = {
        "event": FieldRule(type="string", required=True),
        "custom_event_name": FieldRule(type="string", pattern=r"^[\w.\-:]+$"),
        "description": FieldRule(type="string", max_length=255),
        "enabled": FieldRule(type="bool", default=True),
    }
    config_model = TriggerConfig

    def validate_custom(self) -> List[str]:
        if self.config.get("event") == CUSTOM_EVENT and not self.config.get("custom_event_name"):
            return ["Custom event name is required for custom events"]
        return []

    def event_name(self) -> str:
        """Name of the event this trigger listens for."""
        if self.config.get("event") == CUSTOM_EVENT:
            return self.config.get("custom_event_name") or CUSTOM_EVENT
        return self.config.get("event", "")

    async def execute_node(self, context: Dict[str, Any]) -> Dict[str, Any]:
        if not self.options.enabled:
            return {"success": False, "error": "Trigger is disabled"}

        output: Dict[str, Any] = {
            "trigger_event": self.event_name(),
            "trigger_id": self.node_id,
            "triggered_at": self.clock().isoformat(),
        }
        for key in _CONTEXT_IDS:
            if key in context:
                output[key] = context[key]
        return {"output": output}
