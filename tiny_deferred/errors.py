"""Exceptions raised by tiny_deferred."""

from typing import Any


class InvalidStateError(ValueError):
    """Raised when a Deferred that is already settled (or locked in to
    another future) is resolved or rejected again."""


class RejectedError(Exception):
    """Carries a rejection reason that is not itself an exception.

    The underlying ``concurrent.futures.Future`` only accepts exceptions, so
    ``deferred.reject("nope")`` stores ``RejectedError("nope")`` there. The
    original object stays available as ``reason``.
    """

    def __init__(self, reason: Any) -> None:
        super().__init__(reason)
        self.reason = reason


def as_exception(reason: Any) -> BaseException:
    """Return ``reason`` if it is an exception, else wrap it in RejectedError."""
    if isinstance(reason, BaseException):
        return reason
    return RejectedError(reason)


def unwrap_reason(exc: BaseException) -> Any:
    """Inverse of :func:`as_exception`."""
    if type(exc) is RejectedError:
        return exc.reason
    return exc
