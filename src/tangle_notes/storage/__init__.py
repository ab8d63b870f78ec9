"""Storage backends for the Tangle Notes entity store."""

from tangle_notes.storage.base import StorageBackend
from tangle_notes.storage.json_backend import JsonFileBackend
from tangle_notes.storage.sql_backend import SqlBackend

__all__ = [
    "StorageBackend",
    "JsonFileBackend",
    "SqlBackend",
]
