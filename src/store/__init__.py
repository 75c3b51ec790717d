"""
Fragment persistence: abstract store plus in-memory and Firestore backends.
"""

from .base import CommitResult, FragmentStore
from .memory_store import InMemoryFragmentStore

__all__ = [
    "CommitResult",
    "FragmentStore",
    "InMemoryFragmentStore",
]
