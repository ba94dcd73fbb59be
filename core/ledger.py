"""
Ledger Model for the SPOT protocol.

The ledger is the shared environment every protocol component lives in. It
keeps the simulation clock, records emitted events, and makes every
protocol operation all-or-nothing: components register themselves with the
ledger and a transaction snapshots their mutable state so it can be restored
if the operation raises.
"""

import copy
import functools
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, List

from errors import ReentrantCall

logger = logging.getLogger(__name__)


@dataclass
class Event:
    """A single event emitted by a protocol component."""
    timestamp: int
    source: str
    name: str
    args: Dict[str, Any] = field(default_factory=dict)


class Stateful:
    """
    Mixin for components whose state is restored on a failed transaction.

    Subclasses list their mutable attributes in _state_fields. Containers are
    shallow-copied into the snapshot, other values are kept by reference.
    """

    _state_fields = ()

    def snapshot(self):
        state = {}
        for name in self._state_fields:
            value = getattr(self, name)
            if isinstance(value, (dict, list, set)):
                value = copy.copy(value)
            state[name] = value
        return state

    def restore(self, state):
        for name, value in state.items():
            setattr(self, name, value)


class Ledger:
    """
    Shared clock, event log and transaction manager.
    """

    def __init__(self, start_time=0):
        # Simulation time in seconds
        self.current_time = start_time

        # Emitted events, oldest first
        self.events: List[Event] = []

        # Components whose state participates in transactions
        self._components = []

        # Nesting depth of open transactions
        self._depth = 0

    def track(self, component):
        """Registers a Stateful component with the ledger."""
        self._components.append(component)
        return component

    def untrack(self, component):
        """
        Stops snapshotting a component whose state can no longer change.

        Returns:
            True if the component was tracked
        """
        for i, c in enumerate(self._components):
            if c is component:
                del self._components[i]
                return True
        return False

    @property
    def component_count(self):
        return len(self._components)

    def update_time(self, seconds):
        """
        Advances the clock by the specified number of seconds.

        Args:
            seconds: Number of seconds to advance

        Raises:
            ValueError: If seconds is negative
        """
        if seconds < 0:
            raise ValueError("Time cannot move backwards")
        self.current_time += seconds

    def emit(self, source, name, **args):
        """
        Records an event and logs it.

        Args:
            source: Address of the emitting component
            name: Event name
            **args: Event payload

        Returns:
            The recorded Event
        """
        event = Event(self.current_time, source, name, args)
        self.events.append(event)
        logger.debug("[%s] %s %s", source, name, args)
        return event

    def events_named(self, name, source=None):
        """Returns recorded events with the given name (and source, if set)."""
        return [
            e for e in self.events
            if e.name == name and (source is None or e.source == source)
        ]

    @property
    def in_transaction(self):
        return self._depth > 0

    @contextmanager
    def transaction(self):
        """
        Runs the enclosed block atomically.

        A nested transaction joins the outermost one. If the outermost block
        raises, every tracked component, the set of tracked components and
        the event log are restored to their state on entry and the exception
        propagates.
        """
        if self._depth > 0:
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
            return

        components = list(self._components)
        snapshots = [(c, c.snapshot()) for c in components]
        event_count = len(self.events)
        self._depth = 1
        try:
            yield self
        except Exception:
            for component, state in snapshots:
                component.restore(state)
            self._components = components
            del self.events[event_count:]
            logger.debug("Transaction rolled back, %d components restored", len(snapshots))
            raise
        finally:
            self._depth = 0


def atomic(method):
    """
    Decorator for protocol entry points.

    Rejects re-entry on the same component and runs the call inside a ledger
    transaction. The component must expose `ledger` and `address`.
    """

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        if getattr(self, "_entered", False):
            raise ReentrantCall(f"{self.address}: reentrant call to {method.__name__}")
        self._entered = True
        try:
            with self.ledger.transaction():
                return method(self, *args, **kwargs)
        finally:
            self._entered = False

    return wrapper
