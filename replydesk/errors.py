"""
Error taxonomy for the session, storage and reply layers.

- TransportError: connection drop or dispatch failure (recoverable)
- PersistenceError: storage backend unavailable or write rejected
- CompletionError: AI completion failure, absorbed by the reply policy
"""


class ReplydeskError(Exception):
    """Base class for all replydesk errors."""


class TransportError(ReplydeskError):
    """The messaging transport dropped or refused an operation."""


class NotConnectedError(TransportError):
    """An operation needed a live transport but the session is not connected."""


class PersistenceError(ReplydeskError):
    """The storage backend could not complete a read or write."""


class CompletionError(ReplydeskError):
    """The AI completion call failed (timeout, quota, malformed response)."""
