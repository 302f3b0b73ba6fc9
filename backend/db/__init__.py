from .part_store import (
    LoadResult,
    WorkingMemoryStore,
    close_part_store,
    get_part_store,
)
from .sources import SQLWorkingMemorySources, WorkingMemorySources

__all__ = [
    "LoadResult",
    "SQLWorkingMemorySources",
    "WorkingMemorySources",
    "WorkingMemoryStore",
    "close_part_store",
    "get_part_store",
]
