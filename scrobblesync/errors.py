from typing import Optional


class SyncError(Exception):
    """Base class for everything the sync engine treats as recoverable."""


class RemoteFetchError(SyncError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class StoreError(SyncError):
    def __init__(self, operation: str, cause: Exception):
        super().__init__(f"{operation} failed: {cause}")
        self.operation = operation
        self.cause = cause


class ConversionError(SyncError):
    """A remote record could not be turned into a storable event."""
