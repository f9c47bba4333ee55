"""Error taxonomy for polling remote engine tasks.

Infrastructure failures (``TransportError``, ``PollTimeoutError``,
``ProtocolError``) always propagate to the caller. A remote task that
reports ``failed`` is not an error of the poller: it comes back as a
negative ``OperationResult``, and only the ops workflows that cannot
continue after it raise ``OperationFailedError``.
"""

from typing import Any, Optional


class PollerError(Exception):
    """Base class for poller and engine management errors.

    Attributes:
        message: Human-readable error description.
        handle: Task handle being polled, if any.
        elapsed: Seconds spent polling before the error.
        polls: Number of status fetches issued before the error.
    """

    category = "poller"

    def __init__(
        self,
        message: str = "",
        *,
        handle: Any = None,
        elapsed: float = 0.0,
        polls: int = 0,
    ) -> None:
        self.message = message
        self.handle = handle
        self.elapsed = elapsed
        self.polls = polls
        super().__init__(message)

    def to_error_dict(self) -> dict:
        return {
            "category": self.category,
            "message": self.message,
            "handle": self.handle,
            "elapsed": round(self.elapsed, 3),
            "polls": self.polls,
        }


class TransportError(PollerError):
    """The status fetch itself failed (network, auth). Never retried here."""

    category = "transport"


class PollTimeoutError(PollerError, TimeoutError):
    """The time budget ran out while the task was still in progress."""

    category = "timeout"


class ProtocolError(PollerError):
    """The engine returned something that cannot be interpreted."""

    category = "protocol"


class EngineUnavailableError(PollerError):
    """The engine never reported itself healthy."""

    category = "unavailable"


class OperationFailedError(PollerError):
    """A workflow step cannot continue because its remote task failed."""

    category = "operation"

    def __init__(self, message: str = "", *, result: Optional[Any] = None) -> None:
        self.result = result
        if result is not None:
            super().__init__(
                message,
                handle=result.handle,
                elapsed=result.elapsed_time,
                polls=result.polls,
            )
        else:
            super().__init__(message)
