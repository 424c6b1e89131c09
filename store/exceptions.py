from typing import Optional


class StoreError(Exception):
    pass


class DocumentNotFoundError(StoreError):
    def __init__(self, path: str):
        super().__init__(f"Document {path} not found")
        self.path = path


class ConflictError(StoreError):
    """The document changed since the version the writer last observed."""

    def __init__(self, path: str, message: Optional[str] = None):
        super().__init__(message or f"Version conflict writing {path}")
        self.path = path


class TransientError(StoreError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class CorruptDocumentError(StoreError):
    def __init__(self, path: str, reason: str):
        super().__init__(f"Document {path} is not valid JSON: {reason}")
        self.path = path
