from typing import Optional


class WaiterError(Exception):
    """Base class for errors describing how a work request wait ended."""

    def __init__(self, handle: str, message: str):
        super().__init__(message)
        self.handle = handle


class RemoteFailureError(WaiterError):
    """The work request finished with status FAILED."""

    def __init__(self, handle: str, reason: Optional[str] = None):
        message = f"Work request {handle} failed"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(handle, message)
        self.reason = reason


class RemoteCanceledError(WaiterError):
    """The work request was canceled on the service side."""

    def __init__(self, handle: str):
        super().__init__(handle, f"Work request {handle} was canceled")


class CallerCanceledError(WaiterError):
    """The caller stopped waiting before the work request finished."""

    def __init__(self, handle: str):
        super().__init__(handle, f"Stopped waiting for work request {handle}")


class WaitTimeoutError(WaiterError, TimeoutError):
    def __init__(
        self,
        handle: str,
        attempts: int,
        last_status: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        if timeout is not None:
            message = (
                f"Work request {handle} did not finish within {timeout} seconds"
            )
        else:
            message = f"Work request {handle} did not finish after {attempts} polls"
        super().__init__(handle, message)
        self.attempts = attempts
        self.last_status = last_status
        self.timeout = timeout
