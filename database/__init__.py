# PropelAI Database Layer
# Job state store: abstract contract, in-memory and PostgreSQL implementations

from database.store import JobStore, MergePolicy, WaitRecord
from database.memory_store import InMemoryJobStore

__all__ = [
    "JobStore",
    "MergePolicy",
    "WaitRecord",
    "InMemoryJobStore",
]
