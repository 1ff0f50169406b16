from typing import Optional


class ContextStoreError(Exception):
    """Base class for context store failures"""


class DuplicateKeyError(ContextStoreError):
    """Raised when adding a key that is already live"""

    def __init__(self, key: str):
        super().__init__(f"Context key {key} already exists. Use update instead.")
        self.key = key


class MissingKeyError(ContextStoreError):
    """Raised when updating a key that is not live"""

    def __init__(self, key: str):
        super().__init__(f"Cannot update non-existent context key: {key}")
        self.key = key


class InvalidContextItemError(ContextStoreError, ValueError):
    """Raised for malformed items (bad confidence, missing fields)"""

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key


class StoreNotReadyError(ContextStoreError):
    """Raised when a durable store is used before its session has been loaded"""


class StoreConnectionError(ContextStoreError):
    """Raised when the durable backing store cannot be reached or loaded"""


class PersistenceError(ContextStoreError):
    """Raised when a single write-through to the backing store fails"""

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key
