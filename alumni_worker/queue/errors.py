"""Exceptions raised by the queue subsystem."""

from typing import Optional


class QueueError(Exception):
    """Base class for queue errors."""


class QueueUnavailableError(QueueError):
    """The Redis backing store cannot be reached.

    Infrastructure failure: propagates out of the task step so the worker
    loop backs off, independent of any task-level retry.
    """


class UnknownHandlerError(QueueError):
    """A handler_ref has no registered handler."""

    def __init__(self, handler_ref: str):
        super().__init__(f"No handler registered for '{handler_ref}'")
        self.handler_ref = handler_ref


class TaskNotFoundError(QueueError):
    """A task id has no stored body (expired or never enqueued)."""


class DoNotRetry(Exception):
    """Raised by a handler to fail the task permanently, skipping backoff."""


class BatchAbortedError(QueueError):
    """Fetching a page failed; the batch stops and can resume at ``cursor.offset``."""

    def __init__(self, message: str, cursor=None):
        super().__init__(message)
        self.cursor = cursor


class BackendError(Exception):
    """The platform backend returned an unexpected response.

    ``status_code`` is None when no response came back. ``request_sent`` is
    False only when the connection was never established, so the backend
    cannot have acted on the request.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, request_sent: bool = True):
        super().__init__(message)
        self.status_code = status_code
        self.request_sent = request_sent

    @property
    def retryable(self) -> bool:
        """Network errors, timeouts, rate limits and 5xx are worth retrying."""
        if self.status_code is None:
            return True
        return self.status_code in (408, 429) or self.status_code >= 500

    @property
    def outcome_unknown(self) -> bool:
        """The request went out but no response arrived (e.g. a read timeout)."""
        return self.status_code is None and self.request_sent
