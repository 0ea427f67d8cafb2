from .dispatcher import EventDispatcher, Listener
from .queue import EventQueue

__all__ = ["EventDispatcher", "EventQueue", "Listener"]
