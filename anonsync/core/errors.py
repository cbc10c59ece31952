"""
Error taxonomy for the sync pipeline.

Only ConnectionFailure and SubscriptionFailure are fatal to the process.
WriteFailure and MalformedEvent are absorbed by the feed consumer.
"""


class SyncError(Exception):
    """Base class for all pipeline errors."""
    pass


class ConnectionFailure(SyncError):
    """Raised when the source/target store cannot be reached at startup."""
    pass


class SubscriptionFailure(SyncError):
    """Raised when the change feed errors after being established."""
    pass


class WriteFailure(SyncError):
    """Raised when a bulk upsert or a checkpoint write fails."""
    pass


class MalformedEvent(SyncError):
    """A change event or document that cannot be turned into a customer record."""

    def __init__(self, message: str, resume_token: dict | None = None):
        super().__init__(message)
        self.resume_token = resume_token
