"""Exceptions raised by the victims store and synchronizer."""

from datetime import datetime


class VictimsError(Exception):
    """Base class for victims database failures."""

    pass


class StorageError(VictimsError):
    """Raised when the local store cannot complete an operation.

    Covers schema, connectivity and constraint failures. The underlying
    database exception is available as ``__cause__``.
    """

    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__(f"{operation} failed: {message}")


class SyncError(VictimsError):
    """Raised when a remote feed cannot be fetched or decoded.

    Records which feed failed, the watermark it was requested with and the
    URL it was fetched from.
    """

    def __init__(self, feed: str, since: datetime, url: str, message: str):
        self.feed = feed
        self.since = since
        self.url = url
        super().__init__(
            f"{feed} feed failed (since {since.isoformat()}, {url}): {message}"
        )
