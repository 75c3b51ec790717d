"""
Fragment store interface.

Ownership of a fragment is a per-fragment field changed only by conditional
updates: claim_unowned() and commit_knowledge_unit() are each a single
atomic operation in every implementation.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Tuple

from src.clustering.models import Cluster, ClusteringSession, Fragment, KnowledgeUnit, SessionStatus
from src.clustering.vector_index import ScopeFilter


class CommitResult(str, Enum):
    SUCCESS = "success"
    CONFLICT = "conflict"


class FragmentStore(ABC):
    """Persistence operations used by clustering sessions and vector search."""

    # Fragments

    @abstractmethod
    def add_fragments(self, fragments: Iterable[Fragment]) -> int:
        """Insert or replace fragments. Returns the number written."""

    @abstractmethod
    def read_fragments(self, fragment_ids: Sequence[str]) -> List[Fragment]:
        """Fetch fragments in the order requested; unknown ids are skipped."""

    @abstractmethod
    def list_unowned(self, scope: Optional[ScopeFilter] = None) -> List[Fragment]:
        """Available fragments with embeddings in scope, without claiming them."""

    @abstractmethod
    def query_vector_neighbors(
        self,
        vector: Sequence[float],
        max_distance: Optional[float] = None,
        exclude_owned: bool = False,
        scope_filter: Optional[ScopeFilter] = None,
        limit: int = 10,
    ) -> List[Tuple[str, float]]:
        """Nearest fragments as (id, cosine distance), ascending by distance then id."""

    # Ownership

    @abstractmethod
    def claim_unowned(self, scope: Optional[ScopeFilter], session_id: str) -> List[Fragment]:
        """
        Atomically claim every available fragment with an embedding in scope.

        Concurrent claims over overlapping scopes return disjoint sets.
        """

    @abstractmethod
    def release(self, fragment_ids: Sequence[str], session_id: Optional[str] = None) -> int:
        """
        Return claimed fragments to the pool.

        Owned fragments are never touched. With session_id, only fragments
        claimed by that session are released. Returns the number released.
        """

    @abstractmethod
    def release_session(self, session_id: str) -> int:
        """Release every fragment still claimed by a session."""

    @abstractmethod
    def commit_knowledge_unit(self, unit: KnowledgeUnit, fragment_ids: Sequence[str]) -> CommitResult:
        """
        Create the unit and assign all members to it, or do nothing.

        Succeeds only if every member exists, is unowned and is unclaimed or
        claimed by the unit's session.
        """

    @abstractmethod
    def retract_knowledge_unit(self, unit_id: str) -> List[str]:
        """
        Delete a unit and release its members back to the unowned pool.

        Returns:
            Ids of the released fragments

        Raises:
            KeyError: If the unit does not exist
        """

    @abstractmethod
    def list_knowledge_units(self, session_id: Optional[str] = None) -> List[KnowledgeUnit]:
        ...

    # Clusters

    @abstractmethod
    def write_cluster(
        self,
        session_id: str,
        ordinal: int,
        fragment_ids: Sequence[str],
        centroid: Optional[List[float]] = None,
        intra_cluster_distance: Optional[float] = None,
    ) -> Cluster:
        ...

    @abstractmethod
    def list_clusters(self, session_id: str) -> List[Cluster]:
        """Clusters of a session ordered by ordinal."""

    @abstractmethod
    def delete_clusters(self, session_id: str) -> int:
        ...

    # Sessions

    @abstractmethod
    def create_session(self, session: ClusteringSession) -> ClusteringSession:
        ...

    @abstractmethod
    def save_session(self, session: ClusteringSession) -> None:
        ...

    @abstractmethod
    def get_session(self, session_id: str) -> ClusteringSession:
        """
        Raises:
            KeyError: If the session does not exist
        """

    @abstractmethod
    def transition_session(self, session: ClusteringSession, expected: SessionStatus) -> bool:
        """
        Write the session only if its stored status is still `expected`.

        A single atomic compare-and-set. Returns False, writing nothing, when
        another invocation changed the status first.

        Raises:
            KeyError: If the session does not exist
        """
