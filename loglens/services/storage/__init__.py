from loglens.services.storage.base import BackendCapabilities, Deadline, LogStorageAdapter
from loglens.services.storage.factory import create_storage

__all__ = [
    "BackendCapabilities",
    "Deadline",
    "LogStorageAdapter",
    "create_storage",
]
