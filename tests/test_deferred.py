# tests/test_deferred.py
from concurrent import futures
import threading

import pytest

from tiny_deferred.errors import InvalidStateError
from tiny_deferred.future import Deferred, deferred, is_deferred
from tiny_deferred.state import State


def test_new_deferred_is_pending():
    """A fresh Deferred is pending with neither value nor reason."""
    d = Deferred()
    assert d.state == "pending"
    assert d.state is State.PENDING
    assert d.value is None
    assert d.reason is None
    assert not d.done()


def test_resolve_sets_value_and_result():
    """Resolving records the value before anything awaits it."""
    d = Deferred()
    d.resolve(42)
    assert d.state == "fulfilled"
    assert d.value == 42
    assert d.reason is None
    assert d.done()
    assert d.result() == 42


def test_resolve_without_value():
    d = Deferred()
    d.resolve()
    assert d.state == "fulfilled"
    assert d.result() is None


def test_reject_sets_reason():
    """The reason is kept as-is and re-raised from result()."""
    error = ValueError("x")
    d = Deferred()
    d.reject(error)
    assert d.state == "rejected"
    assert d.reason is error
    assert d.value is None
    with pytest.raises(ValueError, match="x"):
        d.result()


def test_reject_observer_receives_reason():
    """A catch attached before rejecting receives exactly the reason."""
    error = RuntimeError("x")
    seen = []
    d = Deferred()
    d.catch(seen.append)
    d.reject(error)
    assert d.reason is error
    assert seen == [error]


def test_double_resolve_raises():
    """
    Settling twice fails fast and leaves the first outcome in place.
    """
    d = Deferred()
    d.resolve(1)
    with pytest.raises(InvalidStateError, match="already fulfilled"):
        d.resolve(2)
    with pytest.raises(ValueError, match="already fulfilled"):
        d.reject("late")
    assert d.value == 1
    assert d.result() == 1


def test_double_reject_raises():
    d = Deferred()
    d.catch(lambda reason: None)
    d.reject("first")
    with pytest.raises(InvalidStateError, match="Cannot reject a deferred that is already rejected"):
        d.reject("second")
    assert d.reason == "first"


def test_second_settlement_fires_nothing():
    settled = []
    d = Deferred()
    d.on("settled", settled.append)
    d.resolve(1)
    with pytest.raises(InvalidStateError):
        d.resolve(2)
    assert len(settled) == 1


def test_resolve_with_deferred_adopts_it():
    """Resolving with another Deferred follows that Deferred's outcome."""
    inner = Deferred()
    outer = Deferred()
    outer.resolve(inner)
    assert outer.state == "pending"
    with pytest.raises(InvalidStateError, match="following another future"):
        outer.resolve(2)

    inner.resolve(5)
    assert outer.state == "fulfilled"
    assert outer.value == 5


def test_resolve_with_rejected_deferred_rejects():
    inner = Deferred.rejected("inner failed")
    outer = Deferred()
    outer.resolve(inner)
    assert outer.state == "rejected"
    assert outer.reason == "inner failed"


def test_resolve_with_concurrent_future():
    """A plain concurrent.futures.Future is adopted too."""
    future = futures.Future()
    d = Deferred()
    d.resolve(future)
    assert d.state == "pending"
    future.set_result(3)
    assert d.value == 3

    failing = futures.Future()
    e = Deferred()
    e.resolve(failing)
    error = KeyError("k")
    failing.set_exception(error)
    assert e.reason is error


def test_resolve_with_cancelled_future_rejects():
    future = futures.Future()
    d = Deferred()
    d.resolve(future)
    future.cancel()
    assert d.state == "rejected"
    assert isinstance(d.reason, futures.CancelledError)


def test_resolve_with_itself_rejects():
    d = Deferred()
    d.resolve(d)
    assert d.state == "rejected"
    assert isinstance(d.reason, TypeError)


def test_owned_future_cannot_be_cancelled():
    d = Deferred()
    assert not d.future.cancel()
    assert not d.cancelled()
    d.resolve("ok")
    assert d.future.result() == "ok"


def test_result_timeout():
    with pytest.raises(futures.TimeoutError):
        Deferred().result(timeout=0.01)


def test_resolve_from_another_thread():
    """result() blocks until another thread resolves the Deferred."""
    d = Deferred()
    timer = threading.Timer(0.05, d.resolve, args=(7,))
    timer.start()
    assert d.result(timeout=5) == 7
    timer.join()


def test_racing_resolvers_settle_once():
    """
    Many threads racing to resolve the same Deferred: exactly one wins,
    the rest get InvalidStateError and only one statechange fires.
    """
    d = Deferred()
    changes = []
    d.on("statechange", changes.append)
    barrier = threading.Barrier(8)
    failures = []

    def _race(i):
        barrier.wait()
        try:
            d.resolve(i)
        except InvalidStateError as e:
            failures.append(e)

    threads = [threading.Thread(target=_race, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(failures) == 7
    assert len(changes) == 1
    assert d.value in range(8)


def test_executor_receives_resolve_and_reject():
    d = Deferred(lambda resolve, reject: resolve(1))
    assert d.state == "fulfilled"
    assert d.value == 1

    e = Deferred(lambda resolve, reject: reject("no"))
    assert e.state == "rejected"
    assert e.reason == "no"


def test_executor_settlement_fires_handlers():
    calls = []
    Deferred(lambda resolve, reject: resolve(1), {"on_fulfilled": calls.append})
    assert calls == [1]


def test_executor_exception_rejects():
    error = ValueError("executor failed")

    def executor(resolve, reject):
        raise error

    d = Deferred(executor)
    assert d.state == "rejected"
    assert d.reason is error


def test_executor_exception_after_settling_propagates():
    def executor(resolve, reject):
        resolve(1)
        raise RuntimeError("too late")

    with pytest.raises(RuntimeError, match="too late"):
        Deferred(executor)


def test_handlers_in_first_position():
    def on_fulfilled(value):
        pass

    d = Deferred({"on_fulfilled": on_fulfilled})
    assert d.executor is None
    assert d.handlers == {"on_fulfilled": on_fulfilled}


def test_later_handler_set_wins():
    def first(value):
        pass

    def second(reason):
        pass

    d = Deferred({"on_fulfilled": first}, {"on_rejected": second})
    assert d.handlers == {"on_rejected": second}


def test_executor_and_handlers():
    def executor(resolve, reject):
        pass

    def on_settled(outcome, status):
        pass

    d = Deferred(executor, {"on_settled": on_settled})
    assert d.executor is executor
    assert d.handlers == {"on_settled": on_settled}


def test_sequence_in_first_position_is_ignored():
    d = Deferred([])
    assert d.state == "pending"
    assert d.executor is None
    assert d.handlers == {}


def test_invalid_constructor_argument():
    with pytest.raises(TypeError, match="Expected executor to be a function or mapping"):
        Deferred(42)


def test_factory_forwards_arguments():
    """deferred() builds the same thing as calling the class."""
    calls = []
    d = deferred(lambda resolve, reject: resolve("made"), {"on_fulfilled": calls.append})
    assert isinstance(d, Deferred)
    assert d.value == "made"
    assert calls == ["made"]

    e = deferred({"on_fulfilled": calls.append})
    e.resolve("again")
    assert calls == ["made", "again"]
    assert deferred().state == "pending"


def test_reset_returns_fresh_pending_copy():
    """
    reset() keeps the original as it was and carries its listeners over to
    a new pending Deferred.
    """
    values = []

    def record(event):
        values.append(event.detail.value)

    d = Deferred()
    d.on("settled", record)
    d.resolve(1)

    fresh = d.reset()
    assert fresh is not d
    assert fresh.state == "pending"
    assert fresh.listeners["settled"][0].callback is record

    fresh.resolve(2)
    assert values == [1, 2]
    assert d.state == "fulfilled"
    assert d.value == 1
    assert d.listeners["settled"][0].callback is record


def test_reset_reruns_executor_and_copies_handlers():
    resolvers = []

    def executor(resolve, reject):
        resolvers.append(resolve)

    def on_fulfilled(value):
        pass

    d = Deferred(executor, {"on_fulfilled": on_fulfilled})
    fresh = d.reset()
    assert len(resolvers) == 2
    assert resolvers[1].__self__ is fresh
    assert fresh.executor is executor
    assert fresh.handlers == d.handlers
    fresh.on_fulfilled = None
    assert "on_fulfilled" in d.handlers


def test_reset_keeps_once_listeners():
    seen = []
    d = Deferred()
    d.once("fulfilled", seen.append)
    fresh = d.reset()
    assert fresh.listeners["fulfilled"][0].once
    fresh.resolve(1)
    fresh.reset().resolve(2)
    assert len(seen) == 1


class ForeignDeferred(futures.Future):
    def resolve(self, value=None):
        self.set_result(value)

    def reject(self, reason=None):
        self.set_exception(reason)


def test_structural_instance_check():
    """Futures with resolve/reject methods pass as Deferreds."""
    assert isinstance(Deferred(), Deferred)
    assert isinstance(ForeignDeferred(), Deferred)
    assert not isinstance(futures.Future(), Deferred)
    assert not isinstance(object(), Deferred)


def test_is_deferred():
    assert is_deferred(Deferred())
    assert is_deferred(ForeignDeferred())
    assert not is_deferred(futures.Future())
    assert not is_deferred(object())

    patched = futures.Future()
    patched.resolve = patched.set_result
    patched.reject = patched.set_exception
    assert is_deferred(patched)


def test_resolve_with_foreign_deferred():
    foreign = ForeignDeferred()
    d = Deferred()
    d.resolve(foreign)
    foreign.resolve("across")
    assert d.value == "across"


def test_repr():
    d = Deferred()
    assert repr(d) == "Deferred(<pending>)"
    d.resolve(42)
    assert repr(d) == "Deferred(<fulfilled> 42)"

    e = Deferred()
    e.reject(ValueError("x"))
    assert repr(e) == "Deferred(<rejected> reason=ValueError('x'))"
