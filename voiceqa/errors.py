"""
Error types raised by the store, storage and upload layers.

Each error carries the HTTP status the API renders it with.
"""

from __future__ import annotations


class VoiceQAError(Exception):
    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInput(VoiceQAError):
    status_code = 400


class MissingField(InvalidInput):
    pass


class MissingFile(InvalidInput):
    pass


class StoreFailure(VoiceQAError):
    pass


class StoreUnavailable(StoreFailure):
    pass


class PersistenceFailure(StoreFailure):
    """Writing a response (and its question flag) did not commit."""


class ForeignKeyViolation(PersistenceFailure):
    pass


class StorageUnavailable(VoiceQAError):
    pass


class AlreadyAnswered(VoiceQAError):
    status_code = 409
