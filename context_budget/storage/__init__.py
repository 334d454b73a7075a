from .filesystem import FilesystemStateStore
from .memory import MemoryStateStore
from .sqlite import SQLiteStateStore

__all__ = ["FilesystemStateStore", "MemoryStateStore", "SQLiteStateStore"]
