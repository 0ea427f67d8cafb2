"""Node handler registry.

Handlers are registered explicitly: the built-in kinds come from a static
list, applications add their own through :func:`register_node_type`.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Type

from ..errors import NotFoundError
from ..providers import ProviderRegistry
from ..utils.clock import Clock, utcnow
from .action import ActionNode, CustomAction, SendEmailAction, register_callback
from .base import NodeConfig, NodeHandler, run_node
from .condition import ConditionNode
from .delay import DelayNode
from .schema import FieldRule, validate_config
from .trigger import CUSTOM_EVENT, TriggerNode

_BUILTIN_NODE_TYPES = (
    TriggerNode,
    ActionNode,
    SendEmailAction,
    CustomAction,
    DelayNode,
    ConditionNode,
)

NODE_TYPES: Dict[str, Type[NodeHandler]] = {cls.node_type: cls for cls in _BUILTIN_NODE_TYPES}


def register_node_type(handler_cls: Type[NodeHandler], node_type: Optional[str] = None) -> None:
    """Add a custom handler class to the registry."""
    tag = node_type or handler_cls.node_type
    if not tag:
        raise ValueError(f"{handler_cls.__name__} does not declare a node_type")
    NODE_TYPES[tag] = handler_cls


def create_handler(
    node_type: str,
    node_id: str,
    config: Optional[Mapping[str, Any]] = None,
    *,
    registry: Optional[Mapping[str, Type[NodeHandler]]] = None,
    providers: Optional[ProviderRegistry] = None,
    clock: Clock = utcnow,
) -> NodeHandler:
    """Instantiate the handler registered for ``node_type``."""
    table = NODE_TYPES if registry is None else registry
    handler_cls = table.get(node_type)
    if handler_cls is None:
        raise NotFoundError(f"Unknown node type: {node_type}", {"node_type": node_type})
    return handler_cls(node_id, config, providers=providers, clock=clock)


__all__ = [
    "CUSTOM_EVENT",
    "NODE_TYPES",
    "ActionNode",
    "ConditionNode",
    "CustomAction",
    "DelayNode",
    "FieldRule",
    "NodeConfig",
    "NodeHandler",
    "SendEmailAction",
    "TriggerNode",
    "create_handler",
    "register_callback",
    "register_node_type",
    "run_node",
    "validate_config",
]
