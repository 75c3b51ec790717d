"""
Unit tests for the Firestore fragment store.

The Firestore client is a MagicMock; transactional helpers are patched
where a test exercises the surrounding logic.
"""

import os
from unittest.mock import MagicMock, patch

import numpy as np
import pytest
from google.cloud.firestore_v1.base_vector_query import DistanceMeasure
from google.cloud.firestore_v1.vector import Vector

from src.clustering.models import ClusteringSession, ConfidenceLevel, Fragment, KnowledgeUnit, SessionStatus
from src.clustering.vector_index import ScopeFilter
from src.store.base import CommitResult
from src.store.firestore_store import (
    DISTANCE_FIELD,
    FirestoreFragmentStore,
    fragment_from_document,
    fragment_to_document,
)


def make_doc(doc_id, data):
    doc = MagicMock()
    doc.id = doc_id
    doc.exists = True
    doc.to_dict.return_value = data
    return doc


@pytest.fixture
def query():
    query = MagicMock()
    query.where.return_value = query
    return query


@pytest.fixture
def db(query):
    db = MagicMock()
    db.collection.return_value = query
    return db


@pytest.fixture
def store(db):
    with patch.dict(os.environ, {}, clear=True):
        return FirestoreFragmentStore(db=db)


class TestDocumentConversion:

    def test_fragment_round_trip(self):
        fragment = Fragment(
            id="f1",
            content="body",
            embedding=np.array([0.1, 0.2]),
            category="FAQ",
            metadata={"tenant": "acme"},
        )
        data = fragment_to_document(fragment)

        assert "id" not in data
        assert isinstance(data["embedding"], Vector)

        data[DISTANCE_FIELD] = 0.3
        restored = fragment_from_document("f1", data)

        assert restored.id == "f1"
        np.testing.assert_allclose(restored.embedding, [0.1, 0.2])
        assert restored.metadata == {"tenant": "acme"}

    def test_fragment_without_embedding(self):
        restored = fragment_from_document("f2", {"content": "text only"})
        assert restored.embedding is None
        assert not restored.has_embedding


class TestQueries:

    def test_default_collections(self, store):
        assert store.fragments_collection == "kx_fragments"
        assert store.units_collection == "knowledge_units"
        assert store.sessions_collection == "clustering_sessions"

    def test_query_vector_neighbors(self, store, query):
        query.find_nearest.return_value.stream.return_value = [
            make_doc("b", {DISTANCE_FIELD: 0.2}),
            make_doc("a", {DISTANCE_FIELD: 0.2}),
            make_doc("c", {DISTANCE_FIELD: 0.05}),
        ]

        results = store.query_vector_neighbors([1.0, 0.0], max_distance=0.5, limit=5)

        assert results == [("c", 0.05), ("a", 0.2), ("b", 0.2)]
        kwargs = query.find_nearest.call_args.kwargs
        assert kwargs["vector_field"] == "embedding"
        assert kwargs["distance_measure"] == DistanceMeasure.COSINE
        assert kwargs["distance_result_field"] == DISTANCE_FIELD
        assert kwargs["distance_threshold"] == 0.5
        assert kwargs["limit"] == 5

    def test_scope_and_availability_filters(self, store, query):
        query.find_nearest.return_value.stream.return_value = []

        store.query_vector_neighbors(
            [1.0, 0.0],
            exclude_owned=True,
            scope_filter=ScopeFilter.of(tenant="acme", category="FAQ"),
        )

        filters = [c.args for c in query.where.call_args_list]
        assert ("metadata.tenant", "==", "acme") in filters
        assert ("category", "==", "FAQ") in filters
        assert ("knowledge_unit_id", "==", None) in filters
        assert ("claimed_by", "==", None) in filters

    def test_predicates_evaluated_after_query(self, store, query):
        query.find_nearest.return_value.stream.return_value = [
            make_doc("keep", {"title": "Reset password", DISTANCE_FIELD: 0.1}),
            make_doc("drop", {"title": "Billing", DISTANCE_FIELD: 0.05}),
        ]
        scope = ScopeFilter.of(lambda f: "password" in f.title.lower())

        results = store.query_vector_neighbors([1.0, 0.0], scope_filter=scope, limit=3)

        assert results == [("keep", 0.1)]
        assert query.find_nearest.call_args.kwargs["limit"] == 12

    def test_invalid_limit(self, store):
        with pytest.raises(ValueError):
            store.query_vector_neighbors([1.0], limit=0)

    def test_read_fragments_preserves_order(self, store, db):
        db.get_all.return_value = [
            make_doc("f2", {"content": "two"}),
            make_doc("f1", {"content": "one"}),
        ]
        fragments = store.read_fragments(["f1", "missing", "f2"])
        assert [f.id for f in fragments] == ["f1", "f2"]

    def test_list_unowned_skips_missing_embeddings(self, store, query):
        query.stream.return_value = [
            make_doc("f1", {"content": "one", "embedding": [1.0, 0.0]}),
            make_doc("f2", {"content": "two"}),
        ]
        assert [f.id for f in store.list_unowned()] == ["f1"]


class TestWrites:

    def test_add_fragments_batches(self, store, db):
        fragments = [Fragment(id=f"f{i}", content="", embedding=np.ones(2)) for i in range(1200)]

        assert store.add_fragments(fragments) == 1200
        assert db.batch.return_value.commit.call_count == 3

    def test_claim_unowned_uses_transaction_result(self, store, query):
        query.stream.return_value = [
            make_doc("f1", {"content": "", "embedding": [1.0, 0.0]}),
            make_doc("f2", {"content": "", "embedding": [0.0, 1.0]}),
        ]
        with patch("src.store.firestore_store._claim_in_transaction", return_value=["f2"]) as claim:
            claimed = store.claim_unowned(None, "s1")

        assert [f.id for f in claimed] == ["f2"]
        assert claimed[0].claimed_by == "s1"
        assert claim.call_args.args[2] == "s1"

    def test_commit_conflict(self, store):
        unit = KnowledgeUnit(
            title="t", summary="s", category="FAQ", content="c",
            confidence=ConfidenceLevel.HIGH, fragment_ids=[], session_id="s1",
        )
        with patch("src.store.firestore_store._commit_in_transaction", return_value=False):
            assert store.commit_knowledge_unit(unit, ["f1", "f2"]) == CommitResult.CONFLICT
        with patch("src.store.firestore_store._commit_in_transaction", return_value=True):
            assert store.commit_knowledge_unit(unit, ["f1", "f2"]) == CommitResult.SUCCESS
        assert unit.fragment_ids == ["f1", "f2"]

    def test_write_cluster_stores_centroid_vector(self, store, db):
        cluster = store.write_cluster("s1", 1, ["f1", "f2"], centroid=[0.6, 0.8], intra_cluster_distance=0.02)

        data = db.collection.return_value.document.return_value.set.call_args.args[0]
        assert isinstance(data["centroid"], Vector)
        assert data["fragment_count"] == 2
        assert cluster.ordinal == 1

    def test_get_session_missing(self, store, db):
        db.collection.return_value.document.return_value.get.return_value.exists = False
        with pytest.raises(KeyError):
            store.get_session("missing")

    def test_transition_session(self, store):
        session = ClusteringSession(config={"algorithm": "kmeans"}, status=SessionStatus.RUNNING)

        with patch("src.store.firestore_store._transition_in_transaction", return_value=True) as transition:
            assert store.transition_session(session, SessionStatus.PENDING)

        _transaction, _ref, data, expected = transition.call_args.args
        assert expected == "pending"
        assert data["status"] == "running"
        assert "id" not in data

        with patch("src.store.firestore_store._transition_in_transaction", return_value=False):
            assert not store.transition_session(session, SessionStatus.PENDING)
