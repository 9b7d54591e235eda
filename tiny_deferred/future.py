"""Provides a Deferred: a Future that can be resolved or rejected from outside.

A Deferred owns a ``concurrent.futures.Future`` and exposes ``resolve`` and
``reject`` as methods on itself. Every settlement is announced twice, in a
fixed order: through structured events dispatched to any number of listeners
(see :class:`~tiny_deferred.events.EventTarget`) and through single-callback
handler slots such as ``on_fulfilled``.

Example:
    >>> d = deferred(on_settled=print)  # doctest: +SKIP
    >>> d.resolve(42)
    42 fulfilled
    >>> d.result()
    42
"""

from abc import ABC
import asyncio
from collections import deque
from collections.abc import Mapping
from concurrent.futures import CancelledError, Future
from contextvars import ContextVar
from functools import partial
import logging
import threading
from types import MappingProxyType
from typing import Any, Callable, Generic, Iterable, TypeVar

from .errors import InvalidStateError, as_exception, unwrap_reason
from .events import Event, EventTarget, FulfilledEvent, RejectedEvent, SettledEvent, StateChangeEvent
from .state import SettledResult, State

T = TypeVar("T")

logger = logging.getLogger(__name__)

Resolver = Callable[[Any], None]
Rejecter = Callable[[Any], None]
Executor = Callable[[Resolver, Rejecter], Any]

HANDLER_NAMES = ("on_state_change", "on_fulfilled", "on_rejected", "on_resolved", "on_settled")

# Handler slots fed by each event type, in firing order.
_SLOTS_BY_EVENT: dict[str, tuple[str, ...]] = {
    "statechange": ("on_state_change",),
    "fulfilled": ("on_fulfilled", "on_resolved"),
    "rejected": ("on_rejected",),
    "settled": ("on_settled",),
}

_FUTURE_TYPES = (Future, asyncio.Future)

# Deferred whose handler slot is currently running, see current_deferred().
_CURRENT_DEFERRED: ContextVar["Deferred[Any] | None"] = ContextVar("current_deferred", default=None)

# Per-thread queue of pending continuations; only the outermost call drains it.
_continuations = threading.local()


def _run_soon(fn: Callable[..., Any], *args: Any) -> None:
    """Run ``fn(*args)`` now, or after the continuation already running here.

    Completing a future runs its done-callbacks inside ``set_result``, so a
    long ``then``/adoption chain would otherwise settle each link one stack
    frame deeper than the last. Callbacks queued while another one runs on
    the same thread are drained in order by the outermost call instead.
    """
    queue = getattr(_continuations, "queue", None)
    if queue is not None:
        queue.append(partial(fn, *args))
        return

    queue = _continuations.queue = deque([partial(fn, *args)])
    try:
        while queue:
            callback = queue.popleft()
            try:
                callback()
            except Exception:
                logger.exception("Error in continuation %r", callback)
    finally:
        _continuations.queue = None


def current_deferred() -> "Deferred[Any] | None":
    """Return the Deferred whose handler slot is running, or None outside one.

    Handler slots are called with their documented arguments only; this is how
    a handler reaches the Deferred it fired for, which after ``reset()`` is the
    fresh copy rather than the one the handler was first attached to.
    """
    return _CURRENT_DEFERRED.get()


def _validate_handlers(handlers: Mapping[str, Any]) -> dict[str, Callable[..., Any]]:
    if not isinstance(handlers, Mapping):
        raise TypeError(f"Expected handlers to be a mapping, got {handlers.__class__.__name__}")
    validated = {}
    for name, handler in handlers.items():
        if name not in HANDLER_NAMES:
            raise TypeError(f"Unknown handler {name!r}, expected one of {', '.join(HANDLER_NAMES)}")
        if handler is None:
            continue
        if not callable(handler):
            raise TypeError(f"Expected {name!r} to be a function, got {handler.__class__.__name__}")
        validated[name] = handler
    return validated


class HandlerSlot:
    """Descriptor holding at most one callback per Deferred.

    Reading the attribute returns a function that calls the stored handler (or
    does nothing when the slot is empty) and discards its return value.
    Assigning ``None`` or deleting the attribute clears the slot. While the
    handler runs, :func:`current_deferred` returns the Deferred it fired for.
    """

    def __set_name__(self, owner: type, name: str) -> None:
        self._name = name

    def __get__(self, instance: "Deferred[Any] | None", owner: type | None = None) -> Any:
        if instance is None:
            return self

        def invoke(*args: Any) -> None:
            handler = instance._handlers.get(self._name)
            if handler is None:
                return
            token = _CURRENT_DEFERRED.set(instance)
            try:
                handler(*args)
            finally:
                _CURRENT_DEFERRED.reset(token)

        return invoke

    def __set__(self, instance: "Deferred[Any]", value: Callable[..., Any] | None) -> None:
        if value is None:
            instance._handlers.pop(self._name, None)
        elif callable(value):
            instance._handlers[self._name] = value
        else:
            raise TypeError(f"Expected {self._name!r} to be a function, got {value.__class__.__name__}")

    def __delete__(self, instance: "Deferred[Any]") -> None:
        instance._handlers.pop(self._name, None)


class Deferred(EventTarget, ABC, Generic[T]):
    """A Future whose outcome is decided by calling ``resolve`` or ``reject``.

    A Deferred starts out pending and settles exactly once. Settling fires,
    in order: the ``statechange`` event and ``on_state_change`` handler, the
    ``fulfilled``/``rejected`` event and ``on_fulfilled``/``on_rejected``
    handler (plus ``on_resolved`` on fulfilment), then the ``settled`` event
    and ``on_settled`` handler. Only after that is the underlying future
    completed, so continuations added with ``then`` always run last.

    ``isinstance(obj, Deferred)`` also accepts instances of any Future
    subclass that has callable ``resolve`` and ``reject`` members.
    """

    on_state_change = HandlerSlot()
    on_fulfilled = HandlerSlot()
    on_rejected = HandlerSlot()
    on_resolved = HandlerSlot()
    on_settled = HandlerSlot()

    def __init__(
        self,
        executor: Executor | Mapping[str, Any] | None = None,
        handlers: Mapping[str, Any] | None = None,
    ) -> None:
        """Initialize a new pending Deferred.

        Args:
            executor: Function called right away with this Deferred's
                ``resolve`` and ``reject`` methods. A mapping passed here is
                taken as ``handlers`` instead.
            handlers: Initial handler slots, e.g. ``{"on_settled": print}``

        Raises:
            TypeError: If executor is neither callable nor a mapping, or if
                handlers names an unknown slot or holds a non-callable
        """
        super().__init__()
        if not callable(executor):
            if isinstance(executor, Mapping):
                # a later handler set wins over one passed in the executor position
                handlers = executor if handlers is None else handlers
            elif executor is not None and not isinstance(executor, (list, tuple)):
                raise TypeError(f"Expected executor to be a function or mapping, got {executor.__class__.__name__}")
            executor = None

        self._executor: Executor | None = executor
        self._handlers = _validate_handlers(handlers) if handlers is not None else {}
        self._state = State.PENDING
        self._value: T | None = None
        self._reason: Any = None
        self._exception: BaseException | None = None
        self._claimed = False
        self._lock = threading.Lock()
        self._future: Future[T] = Future()
        # a running future can no longer be cancelled by whoever holds it
        self._future.set_running_or_notify_cancel()

        if executor is not None:
            try:
                executor(self.resolve, self.reject)
            except Exception as e:
                if self._claimed:
                    raise
                self.reject(e)

    @classmethod
    def __subclasshook__(cls, subclass: type) -> Any:
        if cls is Deferred and issubclass(subclass, _FUTURE_TYPES):
            if callable(getattr(subclass, "resolve", None)) and callable(getattr(subclass, "reject", None)):
                return True
        return NotImplemented

    @property
    def state(self) -> State:
        """Current state: pending until resolved or rejected, then final."""
        return self._state

    @property
    def value(self) -> T | None:
        """The fulfilment value, or None unless the Deferred is fulfilled."""
        return self._value

    @property
    def reason(self) -> Any:
        """The rejection reason, or None unless the Deferred is rejected."""
        return self._reason

    @property
    def handlers(self) -> MappingProxyType[str, Callable[..., Any]]:
        """Read-only view of the occupied handler slots.

        Assign through the slot attributes, e.g. ``d.on_settled = fn``, so
        the handler is validated.
        """
        return MappingProxyType(self._handlers)

    @property
    def executor(self) -> Executor | None:
        """The function passed at construction, reused by ``reset()``."""
        return self._executor

    @property
    def future(self) -> "Future[T]":
        """The underlying future, completed once the Deferred settles."""
        return self._future

    def resolve(self, value: Any = None) -> None:
        """Fulfill this Deferred with ``value``.

        If ``value`` is itself a future (a Deferred or any
        ``concurrent.futures``/``asyncio`` future) this Deferred stays pending
        and later settles the same way ``value`` does.

        Raises:
            InvalidStateError: If the Deferred was already resolved or rejected
        """
        self._claim("resolve")
        if value is self:
            self._settle(State.REJECTED, TypeError("A deferred cannot be resolved with itself"))
        elif is_future(value):
            logger.debug("%r adopting %r", self, value)
            value.add_done_callback(partial(_run_soon, self._settle_from))
        else:
            self._settle(State.FULFILLED, value)

    def reject(self, reason: Any = None) -> None:
        """Reject this Deferred with ``reason``.

        ``reason`` does not have to be an exception. Observers registered with
        ``then``/``catch`` receive it unchanged; ``result()`` and ``await``
        raise it, wrapped in RejectedError when it is not an exception.

        Raises:
            InvalidStateError: If the Deferred was already resolved or rejected
        """
        self._claim("reject")
        self._settle(State.REJECTED, reason)

    def reset(self) -> "Deferred[T]":
        """Return a new pending Deferred configured like this one.

        The copy gets the same executor, a copy of the current handlers and
        every listener currently registered here. This Deferred is unchanged.
        """
        handlers = dict(self._handlers)
        if self._executor is not None:
            fresh = type(self)(self._executor, handlers)
        else:
            fresh = type(self)(handlers)
        for type_, entries in self.listeners.items():
            for entry in entries:
                fresh.add_event_listener(type_, entry.callback, once=entry.once)
        return fresh

    def _claim(self, action: str) -> None:
        with self._lock:
            if self._claimed:
                if self._state.pending:
                    raise InvalidStateError(f"Cannot {action} a deferred that is already following another future")
                raise InvalidStateError(f"Cannot {action} a deferred that is already {self._state}")
            self._claimed = True

    def _settle_from(self, source: Any) -> None:
        if source.cancelled():
            self._settle(State.REJECTED, CancelledError())
            return
        exc = source.exception()
        if exc is not None:
            self._settle(State.REJECTED, unwrap_reason(exc))
        else:
            self._settle(State.FULFILLED, source.result())

    def _settle(self, state: State, outcome: Any) -> None:
        previous = self._state
        if state is State.FULFILLED:
            self._value, self._reason, self._exception = outcome, None, None
            outcome_event: Event = FulfilledEvent(outcome)
        else:
            self._value, self._reason, self._exception = None, outcome, as_exception(outcome)
            outcome_event = RejectedEvent(outcome)
        # set last: result() on another thread trusts value/_exception once settled
        self._state = state
        logger.debug("Deferred %x: %s -> %s", id(self), previous, state)

        try:
            self._notify(StateChangeEvent(state, previous))
            self._notify(outcome_event)
            self._notify(SettledEvent(outcome, state))
        finally:
            if state is State.FULFILLED:
                self._future.set_result(outcome)
            else:
                self._future.set_exception(self._exception)

    def _notify(self, event: Event) -> None:
        self.dispatch_event(event)
        for slot in _SLOTS_BY_EVENT[event.type]:
            getattr(self, slot)(*event.handler_args)

    def then(
        self,
        on_fulfilled: Callable[[T], Any] | None = None,
        on_rejected: Callable[[Any], Any] | None = None,
    ) -> "Deferred[Any]":
        """Chain callbacks onto the outcome of this Deferred.

        Args:
            on_fulfilled: Called with the value once fulfilled
            on_rejected: Called with the reason once rejected

        Returns:
            A new Deferred resolved with whatever the called callback returns,
            rejected if it raises, or settled like this one if the matching
            callback is missing
        """
        chained: Deferred[Any] = Deferred()

        def _continue(_: Future[T]) -> None:
            fulfilled = self._state.fulfilled
            outcome = self._value if fulfilled else self._reason
            callback = on_fulfilled if fulfilled else on_rejected
            if callback is None:
                if fulfilled:
                    chained.resolve(outcome)
                else:
                    chained.reject(outcome)
                return
            try:
                result = callback(outcome)
            except Exception as e:
                chained.reject(e)
            else:
                chained.resolve(result)

        self._future.add_done_callback(partial(_run_soon, _continue))
        return chained

    def catch(self, on_rejected: Callable[[Any], Any]) -> "Deferred[Any]":
        """Shorthand for ``then(None, on_rejected)``."""
        return self.then(None, on_rejected)

    def finally_(self, on_settled: Callable[[], Any]) -> "Deferred[T]":
        """Call ``on_settled`` with no arguments once settled, keeping the outcome."""

        def _fulfilled(value: T) -> T:
            on_settled()
            return value

        def _rejected(reason: Any) -> Any:
            on_settled()
            return Deferred.rejected(reason)

        return self.then(_fulfilled, _rejected)

    def done(self) -> bool:
        """Whether this Deferred has settled.

        Returns:
            True once the state is fulfilled or rejected, including while its
            listeners and handlers are still running
        """
        return self._state.settled

    def cancelled(self) -> bool:
        """Always False; a Deferred cannot be cancelled."""
        return False

    def result(self, timeout: float | None = None) -> T:
        """Retrieve the fulfilment value, waiting if necessary.

        Answers right away once the Deferred has settled, even from inside one
        of its own listeners or handlers.

        Args:
            timeout: Maximum seconds to wait, or None to wait forever

        Returns:
            The fulfilment value

        Raises:
            TimeoutError: If the timeout is reached before the Deferred settles
            Exception: The rejection reason, wrapped in RejectedError when it
                is not an exception
        """
        if self._state.fulfilled:
            return self._value  # type: ignore[return-value]
        if self._state.rejected:
            assert self._exception is not None  # for type checker
            raise self._exception
        return self._future.result(timeout)

    def exception(self, timeout: float | None = None) -> BaseException | None:
        """Retrieve the rejection as an exception, waiting if necessary.

        Args:
            timeout: Maximum seconds to wait, or None to wait forever

        Returns:
            None if the Deferred was fulfilled, otherwise the reason (wrapped
            in RejectedError when it is not an exception)

        Raises:
            TimeoutError: If the timeout is reached before the Deferred settles
        """
        if self._state.settled:
            return self._exception
        return self._future.exception(timeout)

    def add_done_callback(self, fn: Callable[["Deferred[T]"], Any]) -> None:
        """Call ``fn`` with this Deferred once it settles (right away if it has)."""
        self._future.add_done_callback(lambda _: _run_soon(fn, self))

    def __await__(self):
        """Wait for the outcome from asyncio code."""
        return asyncio.wrap_future(self._future).__await__()

    def __repr__(self) -> str:
        name = type(self).__name__
        if self._state.fulfilled:
            return f"{name}(<fulfilled> {self._value!r})"
        if self._state.rejected:
            return f"{name}(<rejected> reason={self._reason!r})"
        return f"{name}(<pending>)"

    @classmethod
    def resolved(cls, value: Any = None) -> "Deferred[Any]":
        """Return a Deferred already resolved with ``value``."""
        d = cls()
        d.resolve(value)
        return d

    @classmethod
    def rejected(cls, reason: Any = None) -> "Deferred[Any]":
        """Return a Deferred already rejected with ``reason``."""
        d = cls()
        d.reject(reason)
        return d

    @classmethod
    def all(cls, values: Iterable[Any]) -> "Deferred[list[Any]]":
        """Fulfill with the list of all values once every one is fulfilled.

        Members that are not futures count as fulfilled already. The result
        rejects with the reason of the first member to reject.
        """
        members = [cls.resolved(value) for value in values]
        combined: Deferred[list[Any]] = cls()
        if not members:
            combined.resolve([])
            return combined

        results: list[Any] = [None] * len(members)
        remaining = len(members)
        failed = False
        lock = threading.Lock()

        def _fulfilled(index: int, value: Any) -> None:
            nonlocal remaining
            with lock:
                results[index] = value
                remaining -= 1
                complete = remaining == 0
            if complete:
                combined.resolve(results)

        def _rejected(reason: Any) -> None:
            nonlocal failed
            with lock:
                first, failed = not failed, True
            if first:
                combined.reject(reason)

        for index, member in enumerate(members):
            member.then(partial(_fulfilled, index), _rejected)
        return combined

    @classmethod
    def all_settled(cls, values: Iterable[Any]) -> "Deferred[list[SettledResult[Any]]]":
        """Fulfill with one SettledResult per value once every one has settled."""
        members = [cls.resolved(value) for value in values]
        combined: Deferred[list[SettledResult[Any]]] = cls()
        if not members:
            combined.resolve([])
            return combined

        results: list[Any] = [None] * len(members)
        remaining = len(members)
        lock = threading.Lock()

        def _settled(index: int, member: Deferred[Any]) -> None:
            nonlocal remaining
            outcome = member.value if member.state.fulfilled else member.reason
            with lock:
                results[index] = SettledResult.of(outcome, member.state)
                remaining -= 1
                complete = remaining == 0
            if complete:
                combined.resolve(results)

        for index, member in enumerate(members):
            member.add_done_callback(partial(_settled, index))
        return combined


def is_future(obj: Any) -> bool:
    """Whether ``obj`` is a Deferred or a ``concurrent.futures``/``asyncio`` future."""
    return isinstance(obj, (Deferred, *_FUTURE_TYPES))


def is_deferred(obj: Any) -> bool:
    """Whether ``obj`` can stand in for a Deferred.

    True for Deferred instances and for any future object exposing callable
    ``resolve`` and ``reject`` members, including ones set on the instance.
    """
    if isinstance(obj, Deferred):
        return True
    return (
        isinstance(obj, _FUTURE_TYPES)
        and callable(getattr(obj, "resolve", None))
        and callable(getattr(obj, "reject", None))
    )


def deferred(
    executor: Executor | Mapping[str, Any] | None = None,
    handlers: Mapping[str, Any] | None = None,
    **handler_kwargs: Callable[..., Any],
) -> Deferred[Any]:
    """Create a Deferred without calling the class.

    Takes the same arguments as :class:`Deferred`. Handler slots may also be
    passed as keywords, which win over a handler mapping.

    Example:
        >>> d = deferred(lambda resolve, reject: resolve(1))
        >>> d.state
        <State.FULFILLED: 'fulfilled'>
    """
    if handler_kwargs:
        if isinstance(executor, Mapping) and handlers is None:
            executor, handlers = None, executor
        handlers = {**(handlers or {}), **handler_kwargs}
    return Deferred(executor, handlers)
