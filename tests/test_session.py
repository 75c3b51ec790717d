"""
Integration tests for clustering sessions against the in-memory store.

Covers the full Pending -> Running -> {Completed, Failed} lifecycle:
claiming, partitioning, cluster persistence, synthesis, rollback on
failure and cancellation.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import numpy as np
import pytest

from src.clustering.config import ClusteringConfig
from src.clustering.exceptions import (
    AlgorithmError,
    ConfigurationError,
    ExternalSynthesizerError,
    SessionCancelledError,
    SessionStateError,
)
from src.clustering.models import ConfidenceLevel, Fragment, SessionStatus, _utc_now
from src.clustering.notifications import EventKind, NotificationSink, RecordingNotificationSink
from src.clustering.session import ABANDONED_REASON, EMPTY_CLAIM_REASON, ClusteringSessionManager
from src.store import InMemoryFragmentStore
from src.synthesis.schema import CandidateUnit, SynthesisGuidance, SynthesisRequest, SynthesisResponse
from src.synthesis.synthesizer import Synthesizer


def angle_fragment(fid, degrees, **kwargs):
    radians = np.deg2rad(degrees)
    return Fragment(id=fid, content=f"text {fid}", embedding=np.array([np.cos(radians), np.sin(radians)]), **kwargs)


class WholeClusterSynthesizer(Synthesizer):
    """Proposes one unit per cluster covering every fragment."""

    def __init__(self):
        self.calls = 0

    def synthesize(self, request: SynthesisRequest) -> SynthesisResponse:
        self.calls += 1
        return SynthesisResponse(candidates=[CandidateUnit(
            fragment_ids=list(request.fragment_ids),
            title=f"Unit for {request.cluster_id}",
            summary="summary",
            category="Process",
            content="merged content",
            confidence=ConfidenceLevel.HIGH,
        )])


class RejectingSynthesizer(Synthesizer):
    """Only proposes units that name fragments outside the cluster."""

    def synthesize(self, request: SynthesisRequest) -> SynthesisResponse:
        return SynthesisResponse(candidates=[CandidateUnit(
            fragment_ids=["elsewhere-1", "elsewhere-2"],
            title="Invalid",
            summary="summary",
            category="Process",
            content="content",
            confidence=ConfidenceLevel.LOW,
        )])


class FailingSynthesizer(Synthesizer):

    def __init__(self, fail_on_call=1):
        self.fail_on_call = fail_on_call
        self.calls = 0

    def synthesize(self, request: SynthesisRequest) -> SynthesisResponse:
        self.calls += 1
        if self.calls >= self.fail_on_call:
            raise ExternalSynthesizerError("503 Service Unavailable")
        return WholeClusterSynthesizer().synthesize(request)


class BrokenSink(NotificationSink):

    def publish(self, event):
        raise ConnectionError("sink offline")


class InterruptingSynthesizer(Synthesizer):
    """Simulates the worker process being interrupted mid-synthesis."""

    def __init__(self, error=KeyboardInterrupt):
        self.error = error

    def synthesize(self, request: SynthesisRequest) -> SynthesisResponse:
        raise self.error()


class PendingReadBarrierStore(InMemoryFragmentStore):
    """Holds every Pending session read until `parties` readers arrived."""

    def __init__(self, fragments, parties=2):
        super().__init__(fragments)
        self.barrier = threading.Barrier(parties)

    def get_session(self, session_id):
        session = super().get_session(session_id)
        if session.status == SessionStatus.PENDING:
            self.barrier.wait(timeout=5)
        return session


def run_concurrently(manager, session_ids):
    """Run sessions on separate threads; returns each final status or the exception raised."""
    with ThreadPoolExecutor(max_workers=len(session_ids)) as pool:
        futures = [pool.submit(manager.run_session, sid) for sid in session_ids]
    outcomes = []
    for future in futures:
        error = future.exception()
        outcomes.append(error if error is not None else future.result().status)
    return outcomes


def simulate_dead_worker(store, session_id, running_for=timedelta(hours=2)):
    """Leave a session Running with claims and a cluster, as a crashed worker would."""
    session = store.get_session(session_id)
    session.status = SessionStatus.RUNNING
    session.started_at = _utc_now() - running_for
    store.save_session(session)
    store.claim_unowned(None, session_id)
    store.write_cluster(session_id, 1, ["a", "b", "c"])


@pytest.fixture
def fragments():
    """Three fragments around 0 degrees and two around 90 degrees."""
    return [
        angle_fragment("a", 0),
        angle_fragment("b", 5),
        angle_fragment("c", 10),
        angle_fragment("d", 90),
        angle_fragment("e", 95),
    ]


@pytest.fixture
def store(fragments):
    return InMemoryFragmentStore(fragments)


@pytest.fixture
def executor():
    pool = ThreadPoolExecutor(max_workers=2)
    yield pool
    pool.shutdown(wait=True)


@pytest.fixture
def guidance():
    return SynthesisGuidance(primary_guidance="Consolidate", fragment_weighting="Prefer recent")


def make_manager(store, executor, guidance, synthesizer=None, notifier=None):
    return ClusteringSessionManager(
        store,
        synthesizer=synthesizer or WholeClusterSynthesizer(),
        guidance=guidance,
        notifier=notifier or RecordingNotificationSink(),
        executor=executor,
    )


def assert_nothing_claimed(store):
    for fragment in store.read_fragments(["a", "b", "c", "d", "e"]):
        assert fragment.claimed_by is None


class TestSuccessfulSession:

    def test_two_clusters_become_two_units(self, store, executor, guidance):
        notifier = RecordingNotificationSink()
        manager = make_manager(store, executor, guidance, notifier=notifier)

        session = manager.start_session(ClusteringConfig(distance_threshold=0.3))
        assert session.status == SessionStatus.PENDING

        finished = manager.run_session(session.id)

        assert finished.status == SessionStatus.COMPLETED
        assert finished.fragment_count == 5
        assert finished.clusters_found == 2
        assert finished.units_created == 2
        assert store.list_unowned() == []
        assert_nothing_claimed(store)

        units = store.list_knowledge_units(session_id=session.id)
        assert sorted(sorted(u.fragment_ids) for u in units) == [["a", "b", "c"], ["d", "e"]]

        clusters = store.list_clusters(session.id)
        assert [c.fragment_ids for c in clusters] == [["a", "b", "c"], ["d", "e"]]
        assert clusters[0].centroid is not None
        assert clusters[0].intra_cluster_distance < 0.01

        assert notifier.kinds() == [
            EventKind.SESSION_STARTED,
            EventKind.CLUSTER_BATCH_READY,
            EventKind.SESSION_COMPLETED,
        ]

    def test_status_report(self, store, executor, guidance):
        manager = make_manager(store, executor, guidance)
        session = manager.start_session({"algorithm": "dbscan", "eps": 0.1})
        manager.run_session(session.id)

        report = manager.get_session_status(session.id)

        assert report["session_id"] == session.id
        assert report["status"] == "completed"
        assert report["clusters_found"] == 2
        assert report["units_created"] == 2
        assert report["started_at"] is not None
        assert "error" not in report

    def test_unclustered_fragments_released(self, executor, guidance):
        store = InMemoryFragmentStore([
            angle_fragment("a", 0),
            angle_fragment("b", 5),
            angle_fragment("lonely", 180),
        ])
        manager = make_manager(store, executor, guidance)
        session = manager.run_session(manager.start_session(ClusteringConfig()).id)

        assert session.status == SessionStatus.COMPLETED
        assert session.units_created == 1
        assert [f.id for f in store.list_unowned()] == ["lonely"]

    def test_all_candidates_rejected_still_completes(self, store, executor, guidance):
        manager = make_manager(store, executor, guidance, synthesizer=RejectingSynthesizer())
        session = manager.run_session(manager.start_session(ClusteringConfig()).id)

        assert session.status == SessionStatus.COMPLETED
        assert session.units_created == 0
        assert len(store.list_unowned()) == 5

    def test_scope_limits_claim(self, executor, guidance):
        store = InMemoryFragmentStore([
            angle_fragment("a", 0, metadata={"tenant": "acme"}),
            angle_fragment("b", 5, metadata={"tenant": "acme"}),
            angle_fragment("x", 1, metadata={"tenant": "globex"}),
            angle_fragment("y", 4, metadata={"tenant": "globex"}),
        ])
        manager = make_manager(store, executor, guidance)
        session = manager.run_session(
            manager.start_session(ClusteringConfig(scope={"tenant": "acme"})).id
        )

        assert session.fragment_count == 2
        assert {f.id for f in store.list_unowned()} == {"x", "y"}

    def test_owned_fragments_not_reclustered(self, store, executor, guidance):
        manager = make_manager(store, executor, guidance)
        manager.run_session(manager.start_session(ClusteringConfig()).id)

        second = manager.run_session(manager.start_session(ClusteringConfig()).id)

        assert second.status == SessionStatus.FAILED
        assert second.error == EMPTY_CLAIM_REASON

    def test_failing_notifier_does_not_affect_outcome(self, store, executor, guidance):
        manager = make_manager(store, executor, guidance, notifier=BrokenSink())
        session = manager.run_session(manager.start_session(ClusteringConfig()).id)

        assert session.status == SessionStatus.COMPLETED


class TestFailedSession:

    def test_invalid_config_fails_before_claiming(self, store, executor, guidance):
        manager = make_manager(store, executor, guidance)

        with pytest.raises(ConfigurationError) as exc_info:
            manager.start_session({"linkage": "ward", "metric": "cosine"})

        session_id = exc_info.value.session_id
        assert session_id is not None
        assert manager.get_session_status(session_id)["status"] == "failed"
        assert "Ward" in manager.get_session_status(session_id)["error"]
        assert len(store.list_unowned()) == 5

    def test_unknown_config_key(self, store, executor, guidance):
        manager = make_manager(store, executor, guidance)
        with pytest.raises(ConfigurationError):
            manager.start_session({"algorithm": "kmeans", "k": 3})

    def test_empty_claim(self, executor, guidance):
        store = InMemoryFragmentStore([Fragment(id="bare", content="no embedding")])
        notifier = RecordingNotificationSink()
        manager = make_manager(store, executor, guidance, notifier=notifier)

        session = manager.run_session(manager.start_session(ClusteringConfig()).id)

        assert session.status == SessionStatus.FAILED
        assert session.error == EMPTY_CLAIM_REASON
        assert notifier.kinds()[-1] == EventKind.SESSION_FAILED

    def test_synthesizer_failure_rolls_back(self, store, executor, guidance):
        notifier = RecordingNotificationSink()
        synthesizer = FailingSynthesizer(fail_on_call=2)
        manager = make_manager(store, executor, guidance, synthesizer=synthesizer, notifier=notifier)
        session = manager.start_session(ClusteringConfig())

        with pytest.raises(ExternalSynthesizerError) as exc_info:
            manager.run_session(session.id)

        assert exc_info.value.session_id == session.id
        stored = store.get_session(session.id)
        assert stored.status == SessionStatus.FAILED
        assert "503" in stored.error
        assert stored.units_created == 0
        assert store.list_knowledge_units() == []
        assert store.list_clusters(session.id) == []
        assert len(store.list_unowned()) == 5
        assert_nothing_claimed(store)
        assert notifier.kinds()[-1] == EventKind.SESSION_FAILED

    def test_partition_failure_is_algorithm_error(self, executor, guidance):
        store = InMemoryFragmentStore([
            Fragment(id="a", content="", embedding=np.ones(3)),
            Fragment(id="b", content="", embedding=np.ones(4)),
        ])
        manager = make_manager(store, executor, guidance)
        session = manager.start_session(ClusteringConfig())

        with pytest.raises(AlgorithmError):
            manager.run_session(session.id)

        assert store.get_session(session.id).status == SessionStatus.FAILED
        assert len(store.list_unowned()) == 2

    def test_cancelled_before_partition(self, store, executor, guidance):
        manager = make_manager(store, executor, guidance)
        session = manager.start_session(ClusteringConfig())
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(SessionCancelledError):
            manager.run_session(session.id, cancel_event=cancel)

        assert store.get_session(session.id).status == SessionStatus.FAILED
        assert len(store.list_unowned()) == 5

    def test_cancelled_during_synthesis(self, store, executor, guidance):
        cancel = threading.Event()

        class CancellingSynthesizer(WholeClusterSynthesizer):
            def synthesize(self, request):
                cancel.set()
                return super().synthesize(request)

        manager = make_manager(store, executor, guidance, synthesizer=CancellingSynthesizer())
        session = manager.start_session(ClusteringConfig())

        with pytest.raises(SessionCancelledError):
            manager.run_session(session.id, cancel_event=cancel)

        assert store.list_knowledge_units() == []
        assert len(store.list_unowned()) == 5


class TestSessionState:

    def test_only_pending_sessions_run(self, store, executor, guidance):
        manager = make_manager(store, executor, guidance)
        session = manager.start_session(ClusteringConfig())
        manager.run_session(session.id)

        with pytest.raises(SessionStateError):
            manager.run_session(session.id)

    def test_unknown_session(self, store, executor, guidance):
        manager = make_manager(store, executor, guidance)

        with pytest.raises(KeyError):
            manager.run_session("missing")
        with pytest.raises(KeyError):
            manager.get_session_status("missing")

    def test_retract_returns_fragments_to_pool(self, store, executor, guidance):
        manager = make_manager(store, executor, guidance)
        session = manager.run_session(manager.start_session(ClusteringConfig()).id)
        unit = store.list_knowledge_units(session_id=session.id)[0]

        released = manager.retract_knowledge_unit(unit.id)

        assert sorted(released) == sorted(unit.fragment_ids)
        assert {f.id for f in store.list_unowned()} == set(unit.fragment_ids)


class TestFindSimilar:

    def test_find_similar_through_store(self, store, executor, guidance):
        manager = make_manager(store, executor, guidance)
        results = manager.find_similar([1.0, 0.0], limit=3, min_similarity=0.9)

        assert [fid for fid, _ in results] == ["a", "b", "c"]

    def test_find_similar_excludes_owned(self, store, executor, guidance):
        manager = make_manager(store, executor, guidance)
        manager.run_session(manager.start_session(ClusteringConfig()).id)

        assert manager.find_similar([1.0, 0.0], exclude_owned=True) == []
        assert len(manager.find_similar([1.0, 0.0])) == 5

    def test_find_similar_validates_limit(self, store, executor, guidance):
        manager = make_manager(store, executor, guidance)
        with pytest.raises(ValueError):
            manager.find_similar([1.0, 0.0], limit=0)


class TestInterruptedSession:

    @pytest.mark.parametrize("error", [KeyboardInterrupt, SystemExit])
    def test_interrupt_rolls_back_and_releases(self, store, executor, guidance, error):
        manager = make_manager(store, executor, guidance, synthesizer=InterruptingSynthesizer(error))
        session = manager.start_session(ClusteringConfig())

        with pytest.raises(error):
            manager.run_session(session.id)

        stored = store.get_session(session.id)
        assert stored.status == SessionStatus.FAILED
        assert stored.error == error.__name__
        assert store.list_clusters(session.id) == []
        assert_nothing_claimed(store)

        fresh = manager.run_session(manager.start_session(ClusteringConfig()).id)
        assert fresh.status == SessionStatus.COMPLETED
        assert fresh.units_created == 2


class TestAbandonSession:

    def test_dead_worker_blocks_pool_until_abandoned(self, store, executor, guidance):
        notifier = RecordingNotificationSink()
        manager = make_manager(store, executor, guidance, notifier=notifier)
        stuck = manager.start_session(ClusteringConfig())
        simulate_dead_worker(store, stuck.id)

        blocked = manager.run_session(manager.start_session(ClusteringConfig()).id)
        assert blocked.error == EMPTY_CLAIM_REASON

        abandoned = manager.abandon_session(stuck.id, min_running_seconds=3600)

        assert abandoned.status == SessionStatus.FAILED
        assert store.get_session(stuck.id).error == ABANDONED_REASON
        assert store.list_clusters(stuck.id) == []
        assert len(store.list_unowned()) == 5
        assert notifier.kinds()[-1] == EventKind.SESSION_FAILED

        fresh = manager.run_session(manager.start_session(ClusteringConfig()).id)
        assert fresh.status == SessionStatus.COMPLETED
        assert fresh.units_created == 2
        assert store.list_unowned() == []

    def test_recent_session_is_not_abandoned(self, store, executor, guidance):
        manager = make_manager(store, executor, guidance)
        session = manager.start_session(ClusteringConfig())
        simulate_dead_worker(store, session.id, running_for=timedelta(seconds=5))

        with pytest.raises(SessionStateError):
            manager.abandon_session(session.id, min_running_seconds=3600)

        assert store.get_session(session.id).status == SessionStatus.RUNNING
        assert store.list_unowned() == []

    def test_only_running_sessions_can_be_abandoned(self, store, executor, guidance):
        manager = make_manager(store, executor, guidance)
        pending = manager.start_session(ClusteringConfig())

        with pytest.raises(SessionStateError):
            manager.abandon_session(pending.id)

        completed = manager.run_session(manager.start_session(ClusteringConfig()).id)
        with pytest.raises(SessionStateError):
            manager.abandon_session(completed.id)
        assert store.get_session(completed.id).status == SessionStatus.COMPLETED

    def test_live_worker_stops_after_being_abandoned(self, store, executor, guidance):
        holder = {}

        class AbandoningSink(NotificationSink):
            """Abandons the session as soon as its clusters are ready."""

            def publish(self, event):
                if event.kind == EventKind.CLUSTER_BATCH_READY:
                    holder["manager"].abandon_session(event.session_id, reason="worker timed out")

        manager = make_manager(store, executor, guidance, notifier=AbandoningSink())
        holder["manager"] = manager
        session = manager.start_session(ClusteringConfig())

        with pytest.raises(SessionStateError):
            manager.run_session(session.id)

        stored = store.get_session(session.id)
        assert stored.status == SessionStatus.FAILED
        assert stored.error == "worker timed out"
        assert store.list_knowledge_units() == []
        assert store.list_clusters(session.id) == []
        assert len(store.list_unowned()) == 5

    def test_unknown_session(self, store, executor, guidance):
        manager = make_manager(store, executor, guidance)
        with pytest.raises(KeyError):
            manager.abandon_session("missing")


class TestConcurrentInvocations:

    def test_duplicate_invocation_cannot_overwrite_outcome(self, fragments, executor, guidance):
        store = PendingReadBarrierStore(fragments)
        notifier = RecordingNotificationSink()
        manager = make_manager(store, executor, guidance, notifier=notifier)
        session = manager.start_session(ClusteringConfig())

        outcomes = run_concurrently(manager, [session.id, session.id])

        assert SessionStatus.COMPLETED in outcomes
        assert any(isinstance(o, SessionStateError) for o in outcomes)
        assert store.get_session(session.id).status == SessionStatus.COMPLETED
        assert notifier.kinds().count(EventKind.SESSION_STARTED) == 1
        assert EventKind.SESSION_FAILED not in notifier.kinds()

    def test_sessions_over_one_scope_claim_disjoint_sets(self, fragments, executor, guidance):
        store = PendingReadBarrierStore(fragments)
        manager = make_manager(store, executor, guidance)
        first = manager.start_session(ClusteringConfig())
        second = manager.start_session(ClusteringConfig())

        outcomes = run_concurrently(manager, [first.id, second.id])

        assert sorted(o.value for o in outcomes) == ["completed", "failed"]
        sessions = [store.get_session(first.id), store.get_session(second.id)]
        assert sum(s.fragment_count for s in sessions) == 5

        cluster_members = [
            fid for s in sessions for c in store.list_clusters(s.id) for fid in c.fragment_ids
        ]
        assert len(cluster_members) == len(set(cluster_members))

        unit_members = [fid for u in store.list_knowledge_units() for fid in u.fragment_ids]
        assert len(unit_members) == len(set(unit_members))
        assert sorted(unit_members) == ["a", "b", "c", "d", "e"]
        assert {u.session_id for u in store.list_knowledge_units()} == {
            s.id for s in sessions if s.status == SessionStatus.COMPLETED
        }
        assert_nothing_claimed(store)
