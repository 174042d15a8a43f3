"""Workspace container, storage backends and persisted entity models"""

from .storage import StorageBackend, FileSystemStorage
from .store import MetadataStore
from .workspace import Workspace

__all__ = [
    "StorageBackend",
    "FileSystemStorage",
    "MetadataStore",
    "Workspace",
]
