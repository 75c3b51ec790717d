"""
Thread-safe in-memory fragment store.

Used for local runs and tests. A single lock guards every compare-and-set,
which gives claim and commit the same atomicity as the Firestore store.
"""

import logging
import threading
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from src.clustering.models import Cluster, ClusteringSession, Fragment, KnowledgeUnit, SessionStatus
from src.clustering.vector_index import ScopeFilter, VectorIndex

from .base import CommitResult, FragmentStore

logger = logging.getLogger(__name__)


class InMemoryFragmentStore(FragmentStore):

    def __init__(self, fragments: Optional[Iterable[Fragment]] = None):
        self._lock = threading.RLock()
        self._fragments: Dict[str, Fragment] = {}
        self._units: Dict[str, KnowledgeUnit] = {}
        self._clusters: Dict[str, Cluster] = {}
        self._sessions: Dict[str, ClusteringSession] = {}
        if fragments:
            self.add_fragments(fragments)

    # Fragments

    def add_fragments(self, fragments: Iterable[Fragment]) -> int:
        count = 0
        with self._lock:
            for fragment in fragments:
                self._fragments[fragment.id] = replace(fragment)
                count += 1
        return count

    def read_fragments(self, fragment_ids: Sequence[str]) -> List[Fragment]:
        with self._lock:
            return [replace(self._fragments[fid]) for fid in fragment_ids if fid in self._fragments]

    def list_unowned(self, scope: Optional[ScopeFilter] = None) -> List[Fragment]:
        with self._lock:
            return [
                replace(f) for f in self._fragments.values()
                if f.is_available and f.has_embedding and (scope is None or scope.matches(f))
            ]

    def get_fragment(self, fragment_id: str) -> Optional[Fragment]:
        with self._lock:
            fragment = self._fragments.get(fragment_id)
            return replace(fragment) if fragment else None

    def query_vector_neighbors(
        self,
        vector: Sequence[float],
        max_distance: Optional[float] = None,
        exclude_owned: bool = False,
        scope_filter: Optional[ScopeFilter] = None,
        limit: int = 10,
    ) -> List[Tuple[str, float]]:
        with self._lock:
            snapshot = [replace(f) for f in self._fragments.values()]
        index = VectorIndex(snapshot)
        return index.search(
            vector,
            limit=limit,
            max_distance=max_distance,
            exclude_owned=exclude_owned,
            scope_filter=scope_filter,
        )

    # Ownership

    def claim_unowned(self, scope: Optional[ScopeFilter], session_id: str) -> List[Fragment]:
        with self._lock:
            claimed = []
            for fragment in self._fragments.values():
                if not fragment.is_available or not fragment.has_embedding:
                    continue
                if scope is not None and not scope.matches(fragment):
                    continue
                fragment.claimed_by = session_id
                claimed.append(replace(fragment))
        logger.info(f"Session {session_id} claimed {len(claimed)} fragments")
        return claimed

    def release(self, fragment_ids: Sequence[str], session_id: Optional[str] = None) -> int:
        released = 0
        with self._lock:
            for fid in fragment_ids:
                fragment = self._fragments.get(fid)
                if fragment is None or fragment.is_owned or fragment.claimed_by is None:
                    continue
                if session_id is not None and fragment.claimed_by != session_id:
                    continue
                fragment.claimed_by = None
                released += 1
        return released

    def release_session(self, session_id: str) -> int:
        with self._lock:
            held = [f.id for f in self._fragments.values() if f.claimed_by == session_id]
            return self.release(held, session_id=session_id)

    def commit_knowledge_unit(self, unit: KnowledgeUnit, fragment_ids: Sequence[str]) -> CommitResult:
        with self._lock:
            members = [self._fragments.get(fid) for fid in fragment_ids]
            for fid, fragment in zip(fragment_ids, members):
                if fragment is None or fragment.is_owned:
                    logger.info(f"Commit conflict for unit {unit.id}: fragment {fid} unavailable")
                    return CommitResult.CONFLICT
                if fragment.claimed_by not in (None, unit.session_id):
                    logger.info(f"Commit conflict for unit {unit.id}: fragment {fid} claimed elsewhere")
                    return CommitResult.CONFLICT

            for fragment in members:
                fragment.knowledge_unit_id = unit.id
                fragment.claimed_by = None
            unit.fragment_ids = list(fragment_ids)
            self._units[unit.id] = replace(unit)
        return CommitResult.SUCCESS

    def retract_knowledge_unit(self, unit_id: str) -> List[str]:
        with self._lock:
            unit = self._units.pop(unit_id)
            released = []
            for fid in unit.fragment_ids:
                fragment = self._fragments.get(fid)
                if fragment is not None and fragment.knowledge_unit_id == unit_id:
                    fragment.knowledge_unit_id = None
                    released.append(fid)
        logger.info(f"Retracted knowledge unit {unit_id}, released {len(released)} fragments")
        return released

    def list_knowledge_units(self, session_id: Optional[str] = None) -> List[KnowledgeUnit]:
        with self._lock:
            return [
                replace(u) for u in self._units.values()
                if session_id is None or u.session_id == session_id
            ]

    # Clusters

    def write_cluster(
        self,
        session_id: str,
        ordinal: int,
        fragment_ids: Sequence[str],
        centroid: Optional[List[float]] = None,
        intra_cluster_distance: Optional[float] = None,
    ) -> Cluster:
        cluster = Cluster(
            session_id=session_id,
            ordinal=ordinal,
            fragment_ids=list(fragment_ids),
            centroid=centroid,
            intra_cluster_distance=intra_cluster_distance,
        )
        with self._lock:
            self._clusters[cluster.id] = cluster
        return replace(cluster)

    def list_clusters(self, session_id: str) -> List[Cluster]:
        with self._lock:
            clusters = [replace(c) for c in self._clusters.values() if c.session_id == session_id]
        return sorted(clusters, key=lambda c: c.ordinal)

    def delete_clusters(self, session_id: str) -> int:
        with self._lock:
            doomed = [cid for cid, c in self._clusters.items() if c.session_id == session_id]
            for cid in doomed:
                del self._clusters[cid]
        return len(doomed)

    # Sessions

    def create_session(self, session: ClusteringSession) -> ClusteringSession:
        with self._lock:
            if session.id in self._sessions:
                raise ValueError(f"Session {session.id} already exists")
            self._sessions[session.id] = replace(session)
        return session

    def save_session(self, session: ClusteringSession) -> None:
        with self._lock:
            self._sessions[session.id] = replace(session)

    def get_session(self, session_id: str) -> ClusteringSession:
        with self._lock:
            return replace(self._sessions[session_id])

    def transition_session(self, session: ClusteringSession, expected: SessionStatus) -> bool:
        with self._lock:
            current = self._sessions[session.id]
            if current.status != expected:
                logger.info(
                    f"Session {session.id} is {current.status.value}, "
                    f"not {expected.value}; {session.status.value} not written"
                )
                return False
            self._sessions[session.id] = replace(session)
        return True
