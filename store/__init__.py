"""
Versioned Document Store

This module provides:
- A RemoteBackend contract with GitHub and in-memory implementations
- Whole-document JSON read/replace keyed by logical path
- Optimistic concurrency control with bounded conflict retry
"""

from .backend import GitHubBackend, InMemoryBackend, RemoteBackend, RemoteFile
from .document_store import Document, DocumentStore, RetryPolicy
from .exceptions import (
    ConflictError,
    CorruptDocumentError,
    DocumentNotFoundError,
    StoreError,
    TransientError,
)

__all__ = [
    "RemoteBackend",
    "RemoteFile",
    "InMemoryBackend",
    "GitHubBackend",
    "Document",
    "DocumentStore",
    "RetryPolicy",
    "StoreError",
    "DocumentNotFoundError",
    "ConflictError",
    "TransientError",
    "CorruptDocumentError",
]
