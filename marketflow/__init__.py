"""marketflow: event-driven marketing workflow automation."""

from .cache import get_cache
from .config import MarketflowConfig, load_config
from .contracts import Event, NodeDefinition, NodeResult, WorkflowDefinition, WorkflowSummary
from .engine import EngineServices, WorkflowEngine
from .events import EventDispatcher, EventQueue
from .nodes import NODE_TYPES, NodeHandler, register_callback, register_node_type
from .persistence import get_store
from .providers import ProviderRegistry
from .scheduler import Scheduler

__version__ = "0.1.0"
__all__ = [
    "EngineServices",
    "Event",
    "EventDispatcher",
    "EventQueue",
    "MarketflowConfig",
    "NODE_TYPES",
    "NodeDefinition",
    "NodeHandler",
    "NodeResult",
    "ProviderRegistry",
    "Scheduler",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowSummary",
    "get_cache",
    "get_store",
    "load_config",
    "register_callback",
    "register_node_type",
]
