import asyncio
import random
import time
from typing import Any, Awaitable, Callable, Mapping, Optional

from loguru import logger
from meili_task_poller.errors import PollTimeoutError, ProtocolError, TransportError
from meili_task_poller.models import (
    OperationError,
    OperationHandle,
    OperationResult,
    OperationStatus,
    Outcome,
    PollConfig,
    StatusResponse,
)

FetchStatus = Callable[[OperationHandle], Awaitable[Any]]


def classify_status(payload: Any, config: PollConfig) -> OperationStatus:
    """Map a raw task payload onto the closed set of operation statuses.

    Payloads that are not mappings, or that carry no string status, are
    ``unknown``. A status accepted by both predicates is a contradiction
    and raises ``ProtocolError``.
    """
    if not isinstance(payload, Mapping):
        return OperationStatus.unknown

    status = payload.get(config.status_field)
    if not isinstance(status, str):
        return OperationStatus.unknown

    succeeded = config.success_predicate(status)
    failed = config.failure_predicate(status)
    if succeeded and failed:
        raise ProtocolError(f"Status {status!r} matches both success and failure")
    if succeeded:
        return OperationStatus.succeeded
    if failed:
        return OperationStatus.failed
    if status in config.enqueued_statuses:
        return OperationStatus.enqueued
    if status in config.processing_statuses:
        return OperationStatus.processing
    return OperationStatus.unknown


def _optional_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def extract_error(payload: Mapping, config: PollConfig) -> OperationError:
    """Pull the failure cause out of a failed task payload"""
    error = payload.get("error")
    if isinstance(error, Mapping):
        return OperationError(
            message=str(error.get("message") or ""),
            code=_optional_str(error.get("code")),
            type=_optional_str(error.get("type")),
            link=_optional_str(error.get("link")),
        )
    if error:
        return OperationError(message=str(error))
    return OperationError(
        message=f"Task reported status {payload.get(config.status_field)!r}"
    )


class OperationPoller:
    """Drives one remote task to a terminal state by polling its status.

    ``clock`` and ``sleep`` default to ``time.monotonic`` and
    ``asyncio.sleep``; they can be swapped for deterministic timing.
    """

    def __init__(
        self,
        config: Optional[PollConfig] = None,
        on_status_change: Optional[Callable[[StatusResponse], Any]] = None,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.config = config or PollConfig()
        self.logger = logger
        self.on_status_change = on_status_change
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep

    async def _get_status_once(
        self,
        handle: OperationHandle,
        fetch_status: FetchStatus,
        t0: float,
        polls: int,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Optional[StatusResponse]:
        """Fetches and classifies the status of a task; None if cancelled mid-fetch"""
        try:
            if cancel_event is None:
                data = await fetch_status(handle)
            else:
                fetch = await self._race_cancel(fetch_status(handle), cancel_event)
                if fetch.cancelled():
                    self.logger.info(f"Task {handle}: status fetch abandoned on cancel")
                    return None
                data = fetch.result()
        except Exception as e:
            elapsed = self._clock() - t0
            self.logger.error(f"Status fetch for task {handle} failed: {e}")
            raise TransportError(
                f"Status fetch for task {handle} failed: {e}",
                handle=handle,
                elapsed=elapsed,
                polls=polls,
            ) from e

        elapsed = self._clock() - t0
        try:
            status = classify_status(data, self.config)
        except ProtocolError as e:
            self.logger.error(f"Task {handle}: {e.message}")
            raise ProtocolError(
                e.message, handle=handle, elapsed=elapsed, polls=polls
            ) from e

        if status == OperationStatus.unknown:
            self.logger.error(f"Task {handle} returned an unrecognized payload: {data!r}")
            raise ProtocolError(
                f"Unrecognized status payload for task {handle}: {data!r}",
                handle=handle,
                elapsed=elapsed,
                polls=polls,
            )

        self.logger.debug(
            f"Task {handle} poll #{polls}: {data.get(self.config.status_field)} "
            f"(elapsed {elapsed:.2f}s)"
        )
        return StatusResponse(
            handle=handle,
            status=status,
            raw_response=dict(data),
            elapsed_time=elapsed,
            attempt=polls,
        )

    def _calculate_delay(self, attempt: int) -> float:
        """Calculates the delay before the next poll, escalated by the backoff multiplier and capped"""
        cap = max(self.config.max_interval, self.config.interval)
        delay = min(
            self.config.interval * (self.config.backoff_multiplier**attempt),
            cap,
        )

        # Add random jitter between 0-20% of the delay
        if self.config.jitter:
            delay *= 1 + 0.2 * random.random()
        return delay

    async def _handle_status_change(
        self, status_response: StatusResponse, last_status: Optional[OperationStatus]
    ) -> None:
        """Log the transition and invoke the status change callback if the status has changed"""
        if last_status == status_response.status:
            return
        self.logger.info(
            f"Task {status_response.handle} status changed to "
            f"{status_response.status.value} after {status_response.elapsed_time:.2f}s"
        )
        if self.on_status_change is not None:
            await self.on_status_change(status_response)

    async def _wait_before_retry(
        self, delay: float, cancel_event: Optional[asyncio.Event]
    ) -> bool:
        """Wait out the delay; returns True if the cancel event fired first"""
        if cancel_event is None:
            await self._sleep(delay)
            return False

        await self._race_cancel(self._sleep(delay), cancel_event)
        return cancel_event.is_set()

    async def _race_cancel(
        self, awaitable: Awaitable[Any], cancel_event: asyncio.Event
    ) -> asyncio.Future:
        """Run the awaitable until it finishes or the cancel event fires.

        The loser is cancelled and awaited before returning. The returned
        future is cancelled when the event won.
        """
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for pending in (task, waiter):
                if not pending.done():
                    pending.cancel()
            await asyncio.gather(task, waiter, return_exceptions=True)
        return task

    def _result(
        self,
        handle: OperationHandle,
        outcome: Outcome,
        polls: int,
        t0: float,
        status_response: Optional[StatusResponse] = None,
    ) -> OperationResult:
        payload = status_response.raw_response if status_response else None
        error = None
        if outcome == Outcome.failed:
            error = extract_error(payload, self.config)
        result = OperationResult(
            handle=handle,
            outcome=outcome,
            payload=payload,
            error=error,
            polls=polls,
            elapsed_time=self._clock() - t0,
        )
        self.logger.info(
            f"Task {handle} finished: {outcome.value} after {polls} poll(s), "
            f"{result.elapsed_time:.2f}s"
        )
        return result

    async def poll(
        self,
        handle: OperationHandle,
        fetch_status: FetchStatus,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> OperationResult:
        """Poll the task until it succeeds, fails, is cancelled or runs out of time"""
        t0 = self._clock()
        attempt = 0
        polls = 0
        last_status = None
        last_response = None

        while True:
            if cancel_event is not None and cancel_event.is_set():
                return self._result(handle, Outcome.cancelled, polls, t0, last_response)

            polls += 1
            status_response = await self._get_status_once(
                handle, fetch_status, t0, polls, cancel_event
            )
            if status_response is None:
                return self._result(handle, Outcome.cancelled, polls, t0, last_response)
            await self._handle_status_change(status_response, last_status)
            last_status = status_response.status
            last_response = status_response

            if status_response.status == OperationStatus.succeeded:
                return self._result(handle, Outcome.succeeded, polls, t0, status_response)
            if status_response.status == OperationStatus.failed:
                return self._result(handle, Outcome.failed, polls, t0, status_response)

            delay = self._calculate_delay(attempt)
            elapsed = self._clock() - t0
            if elapsed + delay > self.config.max_wait:
                self.logger.error(
                    f"Task {handle} still {status_response.status.value} "
                    f"after {elapsed:.2f}s, giving up"
                )
                raise PollTimeoutError(
                    f"Task {handle} did not complete within {self.config.max_wait} seconds",
                    handle=handle,
                    elapsed=elapsed,
                    polls=polls,
                )

            self.logger.debug(
                f"Task {handle} still {status_response.status.value}, "
                f"waiting {delay:.2f}s before next attempt"
            )
            if await self._wait_before_retry(delay, cancel_event):
                return self._result(handle, Outcome.cancelled, polls, t0, last_response)
            attempt += 1
