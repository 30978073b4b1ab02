"""Error taxonomy shared by the connection manager, the job queue and the handlers."""


class DrawQueueError(Exception):
    """Base class for all drawqueue errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def __str__(self):
        return self.message


class ValidationError(DrawQueueError):
    """A submission or profile was rejected before it reached the queue."""


class ServerConnectionError(DrawQueueError):
    """Transport, TLS or probe failure while talking to the server."""

    def __init__(self, message: str, url: str | None = None, status: int | None = None):
        self.url = url
        self.status = status
        super().__init__(message)


class GenerationError(DrawQueueError):
    """The server reported a failure while generating a job."""

    def __init__(self, message: str, status: int | None = None, data: dict | None = None):
        self.status = status
        self.data = data
        super().__init__(message)


class PersistenceError(DrawQueueError):
    """A store could not be read or written."""
