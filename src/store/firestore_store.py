"""
Firestore-backed fragment store.

Collections (overridable through environment variables):
    FIRESTORE_FRAGMENTS_COLLECTION: fragments (default: kx_fragments)
    FIRESTORE_UNITS_COLLECTION: knowledge units (default: knowledge_units)
    FIRESTORE_CLUSTERS_COLLECTION: session clusters (default: fragment_clusters)
    FIRESTORE_SESSIONS_COLLECTION: clustering sessions (default: clustering_sessions)

Claim, release, commit, retract and session status transitions run inside
Firestore transactions, so concurrent sessions never claim or commit the same
fragment twice and a session status never moves backwards.
Vector search uses FIND_NEAREST with cosine distance; equality filters are
applied before find_nearest().
"""

import logging
import os
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
from google.cloud import firestore
from google.cloud.firestore_v1.base_vector_query import DistanceMeasure
from google.cloud.firestore_v1.vector import Vector

from src.clustering.models import Cluster, ClusteringSession, Fragment, KnowledgeUnit, SessionStatus
from src.clustering.vector_index import ScopeFilter, rank_neighbors

from .base import CommitResult, FragmentStore

logger = logging.getLogger(__name__)

# Firestore limit on writes per batch or transaction
BATCH_LIMIT = 500

# Firestore limit on find_nearest result size
MAX_NEAREST_LIMIT = 1000

DISTANCE_FIELD = "vector_distance"

# Top-level fragment fields; other scope keys are looked up under metadata
FRAGMENT_FIELDS = {"category", "title", "knowledge_unit_id", "claimed_by"}


def _chunks(items: Sequence[Any], size: int = BATCH_LIMIT) -> Iterable[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _field_path(name: str) -> str:
    return name if name in FRAGMENT_FIELDS else f"metadata.{name}"


def fragment_to_document(fragment: Fragment) -> Dict[str, Any]:
    data = fragment.to_dict()
    data.pop("id")
    if fragment.embedding is not None:
        data["embedding"] = Vector(fragment.embedding.tolist())
    return data


def fragment_from_document(doc_id: str, data: Dict[str, Any]) -> Fragment:
    data = dict(data)
    data.pop(DISTANCE_FIELD, None)
    embedding = data.get("embedding")
    if embedding is not None:
        data["embedding"] = np.asarray(list(embedding), dtype=np.float64)
    data["id"] = doc_id
    return Fragment.from_dict(data)


@firestore.transactional
def _claim_in_transaction(transaction, refs, session_id: str) -> List[str]:
    snapshots = list(transaction.get_all(refs))
    claimed = []
    for snapshot in snapshots:
        if not snapshot.exists:
            continue
        data = snapshot.to_dict()
        if data.get("knowledge_unit_id") is not None or data.get("claimed_by") is not None:
            continue
        transaction.update(snapshot.reference, {"claimed_by": session_id})
        claimed.append(snapshot.id)
    return claimed


@firestore.transactional
def _release_in_transaction(transaction, refs, session_id: Optional[str]) -> int:
    snapshots = list(transaction.get_all(refs))
    released = 0
    for snapshot in snapshots:
        if not snapshot.exists:
            continue
        data = snapshot.to_dict()
        holder = data.get("claimed_by")
        if data.get("knowledge_unit_id") is not None or holder is None:
            continue
        if session_id is not None and holder != session_id:
            continue
        transaction.update(snapshot.reference, {"claimed_by": None})
        released += 1
    return released


@firestore.transactional
def _commit_in_transaction(transaction, unit_ref, unit_data, refs, session_id) -> bool:
    snapshots = list(transaction.get_all(refs))
    if len(snapshots) != len(refs):
        return False
    for snapshot in snapshots:
        if not snapshot.exists:
            return False
        data = snapshot.to_dict()
        if data.get("knowledge_unit_id") is not None:
            return False
        if data.get("claimed_by") not in (None, session_id):
            return False

    transaction.set(unit_ref, unit_data)
    for ref in refs:
        transaction.update(ref, {"knowledge_unit_id": unit_ref.id, "claimed_by": None})
    return True


@firestore.transactional
def _retract_in_transaction(transaction, unit_ref, fragments_ref) -> List[str]:
    unit_snapshot = next(iter(transaction.get_all([unit_ref])))
    if not unit_snapshot.exists:
        raise KeyError(unit_ref.id)

    member_ids = unit_snapshot.to_dict().get("fragment_ids", [])
    refs = [fragments_ref.document(fid) for fid in member_ids]
    released = []
    for snapshot in transaction.get_all(refs):
        if snapshot.exists and snapshot.to_dict().get("knowledge_unit_id") == unit_ref.id:
            transaction.update(snapshot.reference, {"knowledge_unit_id": None})
            released.append(snapshot.id)
    transaction.delete(unit_ref)
    return released


@firestore.transactional
def _transition_in_transaction(transaction, session_ref, data, expected: str) -> bool:
    snapshot = next(iter(transaction.get_all([session_ref])))
    if not snapshot.exists:
        raise KeyError(session_ref.id)
    if snapshot.to_dict().get("status") != expected:
        return False
    transaction.set(session_ref, data)
    return True


class FirestoreFragmentStore(FragmentStore):
    """
    Fragment store on Google Cloud Firestore.

    Args:
        db: Firestore client (created from GCP_PROJECT when omitted)
    """

    def __init__(self, db: Optional[firestore.Client] = None):
        if db is None:
            project = os.environ.get("GCP_PROJECT")
            logger.info(f"Initializing Firestore client for project: {project}")
            db = firestore.Client(project=project)
        self.db = db
        self.fragments_collection = os.environ.get("FIRESTORE_FRAGMENTS_COLLECTION", "kx_fragments")
        self.units_collection = os.environ.get("FIRESTORE_UNITS_COLLECTION", "knowledge_units")
        self.clusters_collection = os.environ.get("FIRESTORE_CLUSTERS_COLLECTION", "fragment_clusters")
        self.sessions_collection = os.environ.get("FIRESTORE_SESSIONS_COLLECTION", "clustering_sessions")

    @property
    def _fragments(self):
        return self.db.collection(self.fragments_collection)

    def _scoped_query(self, scope: Optional[ScopeFilter], available_only: bool):
        query = self._fragments
        if scope is not None:
            for name, value in scope.fields.items():
                query = query.where(_field_path(name), "==", value)
        if available_only:
            query = query.where("knowledge_unit_id", "==", None)
            query = query.where("claimed_by", "==", None)
        return query

    # Fragments

    def add_fragments(self, fragments: Iterable[Fragment]) -> int:
        fragments = list(fragments)
        for chunk in _chunks(fragments):
            batch = self.db.batch()
            for fragment in chunk:
                batch.set(self._fragments.document(fragment.id), fragment_to_document(fragment))
            batch.commit()
            logger.info(f"  Committed batch ({len(chunk)} fragments)")
        return len(fragments)

    def read_fragments(self, fragment_ids: Sequence[str]) -> List[Fragment]:
        found: Dict[str, Fragment] = {}
        for chunk in _chunks(list(fragment_ids)):
            refs = [self._fragments.document(fid) for fid in chunk]
            for snapshot in self.db.get_all(refs):
                if snapshot.exists:
                    found[snapshot.id] = fragment_from_document(snapshot.id, snapshot.to_dict())
        return [found[fid] for fid in fragment_ids if fid in found]

    def query_vector_neighbors(
        self,
        vector: Sequence[float],
        max_distance: Optional[float] = None,
        exclude_owned: bool = False,
        scope_filter: Optional[ScopeFilter] = None,
        limit: int = 10,
    ) -> List[Tuple[str, float]]:
        if limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")

        # In-process predicates run after the query; over-fetch to keep the limit
        fetch_limit = limit
        if scope_filter is not None and scope_filter.predicates:
            fetch_limit = min(limit * 4, MAX_NEAREST_LIMIT)

        query = self._scoped_query(scope_filter, available_only=exclude_owned)
        vector_query = query.find_nearest(
            vector_field="embedding",
            query_vector=Vector(list(map(float, vector))),
            distance_measure=DistanceMeasure.COSINE,
            limit=fetch_limit,
            distance_result_field=DISTANCE_FIELD,
            distance_threshold=max_distance,
        )

        pairs = []
        for doc in vector_query.stream():
            data = doc.to_dict()
            if scope_filter is not None and scope_filter.predicates:
                if not scope_filter.matches(fragment_from_document(doc.id, data)):
                    continue
            pairs.append((doc.id, float(data[DISTANCE_FIELD])))

        results = rank_neighbors(pairs, limit=limit, max_distance=max_distance)
        logger.info(f"Found {len(results)} similar fragments")
        return results

    # Ownership

    def list_unowned(self, scope: Optional[ScopeFilter] = None) -> List[Fragment]:
        fragments = [
            fragment_from_document(doc.id, doc.to_dict())
            for doc in self._scoped_query(scope, available_only=True).stream()
        ]
        return [f for f in fragments if f.has_embedding and (scope is None or scope.matches(f))]

    def claim_unowned(self, scope: Optional[ScopeFilter], session_id: str) -> List[Fragment]:
        candidates = self.list_unowned(scope)

        claimed_ids: List[str] = []
        for chunk in _chunks(candidates):
            refs = [self._fragments.document(f.id) for f in chunk]
            claimed_ids.extend(_claim_in_transaction(self.db.transaction(), refs, session_id))

        claimed_set = set(claimed_ids)
        claimed = [f for f in candidates if f.id in claimed_set]
        for fragment in claimed:
            fragment.claimed_by = session_id
        logger.info(f"Session {session_id} claimed {len(claimed)} of {len(candidates)} candidate fragments")
        return claimed

    def release(self, fragment_ids: Sequence[str], session_id: Optional[str] = None) -> int:
        released = 0
        for chunk in _chunks(list(fragment_ids)):
            refs = [self._fragments.document(fid) for fid in chunk]
            released += _release_in_transaction(self.db.transaction(), refs, session_id)
        return released

    def release_session(self, session_id: str) -> int:
        held = [doc.id for doc in self._fragments.where("claimed_by", "==", session_id).stream()]
        return self.release(held, session_id=session_id)

    def commit_knowledge_unit(self, unit: KnowledgeUnit, fragment_ids: Sequence[str]) -> CommitResult:
        unit.fragment_ids = list(fragment_ids)
        unit_ref = self.db.collection(self.units_collection).document(unit.id)
        unit_data = unit.to_dict()
        unit_data.pop("id")
        refs = [self._fragments.document(fid) for fid in fragment_ids]

        committed = _commit_in_transaction(
            self.db.transaction(), unit_ref, unit_data, refs, unit.session_id
        )
        if not committed:
            logger.info(f"Commit conflict for unit {unit.id}")
            return CommitResult.CONFLICT
        return CommitResult.SUCCESS

    def retract_knowledge_unit(self, unit_id: str) -> List[str]:
        unit_ref = self.db.collection(self.units_collection).document(unit_id)
        released = _retract_in_transaction(self.db.transaction(), unit_ref, self._fragments)
        logger.info(f"Retracted knowledge unit {unit_id}, released {len(released)} fragments")
        return released

    def list_knowledge_units(self, session_id: Optional[str] = None) -> List[KnowledgeUnit]:
        query = self.db.collection(self.units_collection)
        if session_id is not None:
            query = query.where("session_id", "==", session_id)
        return [KnowledgeUnit.from_dict({**doc.to_dict(), "id": doc.id}) for doc in query.stream()]

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
        data = cluster.to_dict()
        data.pop("id")
        if centroid is not None:
            data["centroid"] = Vector(centroid)
        self.db.collection(self.clusters_collection).document(cluster.id).set(data)
        return cluster

    def list_clusters(self, session_id: str) -> List[Cluster]:
        query = self.db.collection(self.clusters_collection).where("session_id", "==", session_id)
        clusters = []
        for doc in query.stream():
            data = doc.to_dict()
            if data.get("centroid") is not None:
                data["centroid"] = list(data["centroid"])
            clusters.append(Cluster.from_dict({**data, "id": doc.id}))
        return sorted(clusters, key=lambda c: c.ordinal)

    def delete_clusters(self, session_id: str) -> int:
        query = self.db.collection(self.clusters_collection).where("session_id", "==", session_id)
        refs = [doc.reference for doc in query.stream()]
        for chunk in _chunks(refs):
            batch = self.db.batch()
            for ref in chunk:
                batch.delete(ref)
            batch.commit()
        return len(refs)

    # Sessions

    def create_session(self, session: ClusteringSession) -> ClusteringSession:
        self.save_session(session)
        return session

    def save_session(self, session: ClusteringSession) -> None:
        data = session.to_dict()
        data.pop("id")
        self.db.collection(self.sessions_collection).document(session.id).set(data)

    def get_session(self, session_id: str) -> ClusteringSession:
        snapshot = self.db.collection(self.sessions_collection).document(session_id).get()
        if not snapshot.exists:
            raise KeyError(session_id)
        return ClusteringSession.from_dict({**snapshot.to_dict(), "id": session_id})

    def transition_session(self, session: ClusteringSession, expected: SessionStatus) -> bool:
        data = session.to_dict()
        data.pop("id")
        session_ref = self.db.collection(self.sessions_collection).document(session.id)
        written = _transition_in_transaction(self.db.transaction(), session_ref, data, expected.value)
        if not written:
            logger.info(f"Session {session.id} is no longer {expected.value}; {session.status.value} not written")
        return written
