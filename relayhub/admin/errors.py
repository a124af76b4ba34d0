from __future__ import annotations


class AdminError(Exception):
    """Base error surfaced by the admin API with an HTTP status."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidInput(AdminError):
    status_code = 400


class NotFound(AdminError):
    status_code = 404


class MethodNotAllowed(AdminError):
    status_code = 405


class Conflict(AdminError):
    status_code = 409


class InternalError(AdminError):
    status_code = 500


class StorageError(Exception):
    """Raised by the SQLite store when a read or write fails."""


class RemoteStoreError(Exception):
    """Raised by the remote snapshot store on transport or protocol failure."""


class RemoteSnapshotMissing(RemoteStoreError):
    """Raised when a named snapshot does not exist on the remote store."""
