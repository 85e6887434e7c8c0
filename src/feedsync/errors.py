"""Error taxonomy for feed synchronization."""


class SyncError(Exception):
    """Base exception for synchronization errors."""
    pass


class AuthError(SyncError):
    """Missing or invalid bearer credential."""
    pass


class InvalidRequestError(SyncError):
    """Malformed request payload."""
    pass


class NotFoundError(SyncError):
    """Calendar not found, disabled, or not owned by the caller."""
    pass


class SyncInProgressError(SyncError):
    """Another invocation holds the calendar's sync lock."""
    pass


class FeedFetchError(SyncError):
    """The ICS feed could not be retrieved."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class ParseError(SyncError):
    """The ICS document is structurally invalid."""
    pass


class RowMutationError(SyncError):
    """Insert or update of a single event or metadata row failed."""

    def __init__(self, title: str, message: str):
        super().__init__(f"{title}: {message}")
        self.title = title
        self.message = message


class CategoryResolutionError(SyncError):
    """Unexpected failure while resolving a category."""
    pass
