class SyncError(Exception):
    """Base class for every error raised by the sync core."""
    pass


class RemoteError(SyncError):
    """The remote record endpoint answered with an error."""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


class TransientRemoteError(RemoteError):
    """Timeouts, connection resets and 5xx answers, after retries ran out."""
    pass


class AuthError(RemoteError):
    """Missing, expired or rejected credential. Never retried."""
    pass


class MalformedEntityError(SyncError):
    """An entity reached the merge without an identifier."""

    def __init__(self, collection: str, entity=None):
        super().__init__(f"{collection}: entity without id: {entity!r}")
        self.collection = collection
        self.entity = entity


class BackupError(SyncError):
    pass
