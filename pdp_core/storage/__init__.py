# pdp_core/storage/__init__.py

from .models import (
    DocumentKind,
    DocumentRef,
    KeyRecord,
    SubmissionEvent,
    SubmissionRecord,
    SubmissionStatus,
    Task,
)
from .provider import KeyStore, SubmissionStore, TaskStore
from .providers.file_keystore import FileKeyStore
from .providers.memory_provider import InMemoryKeyStore, InMemoryStorage
from .providers.sqlite_provider import SQLiteStorage

__all__ = [
    "DocumentKind",
    "DocumentRef",
    "KeyRecord",
    "SubmissionEvent",
    "SubmissionRecord",
    "SubmissionStatus",
    "Task",
    "KeyStore",
    "SubmissionStore",
    "TaskStore",
    "FileKeyStore",
    "InMemoryKeyStore",
    "InMemoryStorage",
    "SQLiteStorage",
]
