"""Record storage backends."""

from .base import RecordStore
from .memory import InMemoryRecordStore

__all__ = ["RecordStore", "InMemoryRecordStore"]
