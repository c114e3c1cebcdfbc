from typing import Optional


class ForgeError(Exception):
    pass


class InvalidProjectId(ForgeError):
    pass


class ProjectNotFound(ForgeError):
    pass


class UpstreamError(ForgeError):
    """Non-2xx (or transport failure) from the chat-completion API."""

    def __init__(self, message: str, status: Optional[int] = None, retry_after: Optional[float] = None):
        super().__init__(message)
        self.status      = status
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        # status None = timeout / connection error
        return self.status is None or self.status == 429 or 500 <= self.status < 600


class QueueFullError(ForgeError):
    pass


class QueueTimeoutError(ForgeError):
    pass
