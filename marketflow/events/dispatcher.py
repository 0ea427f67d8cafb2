"""In-process publish/subscribe with priorities and wildcard names."""

from __future__ import annotations

import inspect
import itertools
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Pattern

logger = logging.getLogger(__name__)

Listener = Callable[[Dict[str, Any], str, "EventDispatcher"], Any]


@dataclass
class _Registration:
    pattern: str
    listener: Listener
    priority: int
    sequence: int
    regex: Optional[Pattern[str]] = field(default=None)

    def matches(self, event_name: str) -> bool:
        if self.regex is None:
            return self.pattern == event_name
        return self.regex.fullmatch(event_name) is not None


def _compile(pattern: str) -> Optional[Pattern[str]]:
    if "*" not in pattern:
        return None
    return re.compile(re.escape(pattern).replace(r"\*", ".*"))


class EventDispatcher:
    """Route named events to registered listeners.

    Listeners are called as ``listener(payload, event_name, dispatcher)`` and
    may be plain functions or coroutines. All listeners whose name or ``*``
    pattern matches run highest priority first, in registration order within
    one priority. The first exception stops the dispatch and propagates.
    """

    def __init__(self) -> None:
        self._registrations: List[_Registration] = []
        self._sequence = itertools.count()

    def add_listener(self, event_name: str, listener: Listener, priority: int = 0) -> None:
        if not event_name:
            raise ValueError("Event name must not be empty")
        if not callable(listener):
            raise TypeError("Listener must be callable")
        self._registrations.append(
            _Registration(
                pattern=event_name,
                listener=listener,
                priority=priority,
                sequence=next(self._sequence),
                regex=_compile(event_name),
            )
        )
        logger.debug("Listener added for %s (priority %s)", event_name, priority)

    def remove_listener(self, event_name: str, listener: Listener) -> bool:
        """Remove every registration of ``listener`` for ``event_name``."""
        before = len(self._registrations)
        self._registrations = [
            r
            for r in self._registrations
            if not (r.pattern == event_name and r.listener == listener)
        ]
        return len(self._registrations) != before

    def clear_listeners(self, event_name: Optional[str] = None) -> None:
        if event_name is None:
            self._registrations.clear()
        else:
            self._registrations = [r for r in self._registrations if r.pattern != event_name]

    def has_listeners(self, event_name: str) -> bool:
        return any(r.matches(event_name) for r in self._registrations)

    def get_listeners(self, event_name: str) -> List[Listener]:
        """Matching listeners in call order."""
        matched = [r for r in self._registrations if r.matches(event_name)]
        matched.sort(key=lambda r: (-r.priority, r.sequence))
        return [r.listener for r in matched]

    async def dispatch(self, event_name: str, payload: Optional[Dict[str, Any]] = None) -> List[Any]:
        payload = payload if payload is not None else {}
        results: List[Any] = []
        listeners = self.get_listeners(event_name)
        logger.debug("Dispatching %s to %d listener(s)", event_name, len(listeners))
        for listener in listeners:
            result = listener(payload, event_name, self)
            if inspect.isawaitable(result):
                result = await result
            results.append(result)
        return results
