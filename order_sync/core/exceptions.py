"""
Error taxonomy for the sync pipeline.

Errors local to one message are caught by the sync processor and counted;
errors with mailbox or organization scope propagate to the caller.
"""


class OrderSyncError(Exception):
    """Base class for all pipeline errors."""


class AuthenticationFailure(OrderSyncError):
    """Mailbox credentials were rejected or could not be refreshed."""


class MailboxUnavailable(OrderSyncError):
    """The mail provider could not be reached for a single call."""


class ClassificationUnavailable(OrderSyncError):
    """The classifier failed, timed out, or returned malformed output."""


class StorageFailure(OrderSyncError):
    """A single database write or read failed."""


class StorageUnavailable(StorageFailure):
    """The database cannot be reached at all."""


class NotificationFailure(OrderSyncError):
    """A notification for one member could not be recorded."""


class UnknownStage(OrderSyncError, ValueError):
    """A stage id outside the 1..8 catalog was requested."""

    def __init__(self, stage_id):
        super().__init__(f"Unknown stage: {stage_id!r}")
        self.stage_id = stage_id
