import asyncio
import random
from typing import Any, Awaitable, Callable, Optional, Union

from loguru import logger
from nosql_client.exceptions import WaitTimeoutError
from nosql_client.models import (
    OperationStatus,
    OutcomeKind,
    PollConfig,
    StatusResponse,
    WaitOutcome,
)

StatusFn = Callable[[str], Awaitable[Union[StatusResponse, OperationStatus, str]]]

_TERMINAL_OUTCOMES = {
    OperationStatus.succeeded: OutcomeKind.completed,
    OperationStatus.failed: OutcomeKind.failed,
    OperationStatus.canceled: OutcomeKind.canceled,
}


class AsyncOperationWaiter:
    """Polls a work request until it reaches a terminal status.

    The waiter holds no state between calls, so one instance can serve any
    number of concurrent waits.
    """

    def __init__(
        self,
        on_status_change: Optional[Callable[[StatusResponse], Any]] = None,
    ):
        self.logger = logger
        self.on_status_change = on_status_change

    async def _poll_once(self, handle: str, status_fn: StatusFn) -> StatusResponse:
        """Queries the status once; errors from status_fn propagate untouched"""
        start_time = asyncio.get_running_loop().time()
        result = await status_fn(handle)
        if isinstance(result, StatusResponse):
            return result

        return StatusResponse(
            status=OperationStatus(result),
            elapsed_time=asyncio.get_running_loop().time() - start_time,
        )

    def _calculate_delay(self, config: PollConfig, attempt: int) -> float:
        """Calculates the delay after the given poll, capped at max_interval"""
        delay = min(
            config.interval * (config.backoff_factor ** (attempt - 1)),
            config.max_interval,
        )

        # Add random jitter between 0-20% of the delay
        if config.jitter:
            delay *= 1 + 0.2 * random.random()
        return delay

    async def _handle_status_change(
        self, status_response: StatusResponse, last_status: Optional[OperationStatus]
    ) -> None:
        """Invoke the status change callback if the status has changed"""
        if last_status == status_response.status:
            return
        self.logger.info(
            f"Work request status changed to {status_response.status.value}"
        )
        if self.on_status_change is not None:
            await self.on_status_change(status_response)

    async def _sleep(
        self, delay: float, cancel_event: Optional[asyncio.Event]
    ) -> bool:
        """Sleeps for delay seconds. Returns True if cancel_event was set meanwhile"""
        if cancel_event is None:
            await asyncio.sleep(delay)
            return False
        # wait_for with a zero timeout never lets event.wait() observe the flag
        if cancel_event.is_set():
            return True
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return cancel_event.is_set()
        return True

    async def _poll_within(
        self, handle: str, status_fn: StatusFn, timeout: float
    ) -> Optional[StatusResponse]:
        """Polls once, giving up after timeout seconds. Returns None on timeout"""
        poll = asyncio.ensure_future(self._poll_once(handle, status_fn))
        try:
            done, _ = await asyncio.wait({poll}, timeout=max(timeout, 0))
        finally:
            if not poll.done():
                poll.cancel()
        if not done:
            return None
        return poll.result()

    async def wait(
        self,
        handle: str,
        config: PollConfig,
        status_fn: StatusFn,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> WaitOutcome:
        """Poll status_fn(handle) until the work request reaches a terminal status.

        Returns a WaitOutcome for SUCCEEDED, FAILED and CANCELED, and for a
        wait aborted through cancel_event. Raises WaitTimeoutError once the
        attempt budget or deadline in config is exhausted. Any exception raised
        by status_fn is propagated without further polls.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        deadline = start_time + config.timeout if config.timeout is not None else None
        attempt = 0
        last_status = None

        def outcome(kind: OutcomeKind, reason: Optional[str] = None) -> WaitOutcome:
            return WaitOutcome(
                handle=handle,
                kind=kind,
                last_status=last_status,
                reason=reason,
                attempts=attempt,
                elapsed_time=loop.time() - start_time,
            )

        if cancel_event is not None and cancel_event.is_set():
            return outcome(OutcomeKind.caller_canceled)

        while True:
            if deadline is None:
                status_response = await self._poll_once(handle, status_fn)
            else:
                status_response = await self._poll_within(
                    handle, status_fn, deadline - loop.time()
                )
                if status_response is None:
                    self.logger.debug(f"Poll for {handle} still running at deadline")
                    raise WaitTimeoutError(handle, attempt, last_status, config.timeout)
            attempt += 1
            self.logger.debug(
                f"Poll {attempt} for {handle}: {status_response.status.value}"
            )

            await self._handle_status_change(status_response, last_status)
            last_status = status_response.status

            if last_status.is_terminal:
                kind = _TERMINAL_OUTCOMES[last_status]
                reason = status_response.reason
                if kind == OutcomeKind.failed and not reason:
                    reason = f"status {last_status.value}"
                return outcome(kind, reason)

            if config.max_attempts is not None and attempt >= config.max_attempts:
                raise WaitTimeoutError(handle, attempt, last_status)

            delay = self._calculate_delay(config, attempt)
            deadline_reached = False
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise WaitTimeoutError(handle, attempt, last_status, config.timeout)
                if remaining <= delay:
                    delay, deadline_reached = remaining, True

            self.logger.debug(
                f"Work request {handle} still {last_status.value}, "
                f"waiting {delay:.2f}s before next poll"
            )
            if await self._sleep(delay, cancel_event):
                self.logger.info(f"Stopped waiting for work request {handle}")
                return outcome(OutcomeKind.caller_canceled)

            # the sleep was cut short to end at the deadline
            if deadline_reached:
                raise WaitTimeoutError(handle, attempt, last_status, config.timeout)


async def wait_for_operation(
    handle: str,
    status_fn: StatusFn,
    config: Optional[PollConfig] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> WaitOutcome:
    """Wait for handle with a default AsyncOperationWaiter"""
    return await AsyncOperationWaiter().wait(
        handle, config or PollConfig(), status_fn, cancel_event=cancel_event
    )
