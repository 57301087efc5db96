"""
Error taxonomy shared by the pipeline and its external boundaries.

Only ConfigurationError is allowed to stop the process, and only at startup.
Every other error is caught at the item or cycle boundary.
"""


class KbDraftError(Exception):
    """Base class for all kbdraft errors."""
    pass


class ConfigurationError(KbDraftError):
    """Missing or malformed credential, endpoint or setting."""
    pass


class TransientExternalError(KbDraftError):
    """Network, timeout, auth or rate-limit failure at an external boundary."""

    def __init__(self, message: str, status_code: int = None, retry_after: float = None):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class MalformedResponseError(KbDraftError):
    """An external API answered with an unexpected shape."""
    pass


class PersistenceError(KbDraftError):
    """The state file could not be read or written."""
    pass


class PublishError(TransientExternalError):
    """The knowledge base refused or failed to create a page."""
    pass


class InvalidTransitionError(KbDraftError):
    """A queue entry was moved along an edge its state machine does not have."""
    pass
