"""Provides the event objects and the publish/subscribe table used by Deferred.

``EventTarget`` keeps an explicit registration table mapping an event type to
an ordered list of listeners, so the currently attached listeners can be
listed (see :attr:`EventTarget.listeners`) and copied onto another target.
The four event classes at the bottom of the module are the ones a Deferred
dispatches when it settles.
"""

from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

from .state import FulfilledResult, RejectedResult, SettledResult, State, StateChange

T = TypeVar("T")


class Event:
    """A dispatched occurrence, identified by ``type`` and carrying ``detail``."""

    __slots__ = ("_type", "_detail", "_cancelable", "_default_prevented", "_target")

    def __init__(self, type: str, *, detail: Any = None, cancelable: bool = False) -> None:
        self._type = type
        self._detail = detail
        self._cancelable = cancelable
        self._default_prevented = False
        self._target: "EventTarget | None" = None

    @property
    def type(self) -> str:
        """Name listeners register for, e.g. ``"settled"``."""
        return self._type

    @property
    def detail(self) -> Any:
        """Read-only payload of the event."""
        return self._detail

    @property
    def cancelable(self) -> bool:
        """Whether ``prevent_default`` has any effect."""
        return self._cancelable

    @property
    def default_prevented(self) -> bool:
        """Whether a listener cancelled this cancelable event."""
        return self._default_prevented

    def prevent_default(self) -> None:
        """Mark the event as cancelled. Has no effect unless it is cancelable."""
        if self._cancelable:
            self._default_prevented = True

    @property
    def target(self) -> "EventTarget | None":
        """The EventTarget (for example the Deferred) dispatching this event.

        None until the event is dispatched.
        """
        return self._target

    @property
    def handler_args(self) -> tuple[Any, ...]:
        """Positional arguments the matching handler slot is called with."""
        return (self._detail,)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(type={self._type!r}, detail={self._detail!r})"


EventListener = Callable[[Event], Any]


@dataclass(frozen=True)
class Listener:
    """One entry of the registration table."""

    callback: EventListener
    once: bool = False


class EventTarget:
    """Registration table supporting subscribe, unsubscribe and dispatch.

    Every verb is reachable under several names. ``add_listener`` and ``on``
    are the same method as ``add_event_listener``; likewise for removal and
    dispatch.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {}

    @property
    def listeners(self) -> dict[str, tuple[Listener, ...]]:
        """Snapshot of the registration table, in registration order."""
        return {type: tuple(entries) for type, entries in self._listeners.items() if entries}

    def add_event_listener(self, type: str, callback: EventListener, *, once: bool = False) -> None:
        """Register ``callback`` for events of ``type``.

        Registering the same callback twice for one type is a no-op.

        Args:
            type: Event type to listen for, e.g. ``"settled"``
            callback: Called with the Event when one of ``type`` is dispatched
            once: Remove the listener right before its first invocation

        Raises:
            TypeError: If callback is not callable
        """
        if not callable(callback):
            raise TypeError(f"Expected listener for {type!r} to be callable, got {callback.__class__.__name__}")
        entries = self._listeners.setdefault(type, [])
        if any(entry.callback == callback for entry in entries):
            return
        entries.append(Listener(callback, once))

    def once(self, type: str, callback: EventListener) -> None:
        """Register ``callback`` for the next event of ``type`` only."""
        self.add_event_listener(type, callback, once=True)

    def remove_event_listener(self, type: str, callback: EventListener) -> None:
        """Unregister ``callback`` from ``type``. Unknown callbacks are ignored."""
        entries = self._listeners.get(type)
        if not entries:
            return
        entries[:] = [entry for entry in entries if entry.callback != callback]

    def dispatch_event(self, event: Event) -> bool:
        """Invoke every listener registered for ``event.type``.

        Listeners run synchronously in registration order. An exception raised
        by a listener propagates and the remaining listeners are skipped.

        Returns:
            False if a listener called ``prevent_default`` on a cancelable
            event, True otherwise
        """
        event._target = self
        for entry in tuple(self._listeners.get(event.type, ())):
            if entry.once:
                self.remove_event_listener(event.type, entry.callback)
            entry.callback(event)
        return not event.default_prevented

    add_listener = add_event_listener
    on = add_event_listener
    remove_listener = remove_event_listener
    off = remove_event_listener
    fire = dispatch_event
    emit = dispatch_event


class StateChangeEvent(Event):
    """Emitted when a Deferred leaves the pending state."""

    def __init__(self, new_state: State, old_state: State) -> None:
        super().__init__("statechange", detail=StateChange(new_state, old_state))

    @property
    def handler_args(self) -> tuple[Any, ...]:
        return (self.detail.new_state, self.detail.old_state)


class FulfilledEvent(Event, Generic[T]):
    """Emitted when a Deferred is fulfilled."""

    def __init__(self, value: T) -> None:
        super().__init__("fulfilled", detail=FulfilledResult(value))

    @property
    def handler_args(self) -> tuple[Any, ...]:
        return (self.detail.value,)


class RejectedEvent(Event):
    """Emitted when a Deferred is rejected."""

    def __init__(self, reason: Any) -> None:
        super().__init__("rejected", detail=RejectedResult(reason))

    @property
    def handler_args(self) -> tuple[Any, ...]:
        return (self.detail.reason,)


class SettledEvent(Event, Generic[T]):
    """Emitted after the fulfilled or rejected event of a Deferred."""

    def __init__(self, outcome: Any, status: State) -> None:
        super().__init__("settled", detail=SettledResult.of(outcome, status))

    @property
    def handler_args(self) -> tuple[Any, ...]:
        detail = self.detail
        outcome = detail.value if detail.status == "fulfilled" else detail.reason
        return (outcome, detail.status)
