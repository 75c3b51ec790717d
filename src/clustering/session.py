"""
Clustering session lifecycle.

A session moves Pending -> Running -> {Completed, Failed}. While Running it
holds a claim on its working set; every path out of Running releases what
the session still holds. Failure additionally retracts the session's units
and deletes its clusters, so a failed session leaves no trace in the pool.

Usage:
    manager = ClusteringSessionManager(store)
    session = manager.start_session(ClusteringConfig(distance_threshold=0.25))
    manager.run_session(session.id)          # normally invoked by the scheduler
    manager.get_session_status(session.id)
"""

import logging
import os
import threading
import time
from concurrent.futures import Executor, ProcessPoolExecutor, wait
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from src.store.base import FragmentStore
from src.synthesis.coordinator import SynthesisCoordinator
from src.synthesis.prompt_manager import PromptManager
from src.synthesis.schema import SynthesisGuidance
from src.synthesis.synthesizer import LLMSynthesizer, Synthesizer

from .clusterer import compute_cluster_statistics, compute_partition
from .config import ClusteringConfig
from .exceptions import (
    AlgorithmError,
    ClusteringError,
    ConfigurationError,
    SessionCancelledError,
    SessionStateError,
)
from .models import Cluster, ClusteringSession, Fragment, Partition, SessionStatus, _utc_now
from .notifications import EventKind, LoggingNotificationSink, NotificationSink, safe_publish
from .vector_index import ScopeFilter, max_distance_for

logger = logging.getLogger(__name__)

# Seconds between cancellation checks while the partition is computed
CANCEL_POLL_INTERVAL = 0.1

EMPTY_CLAIM_REASON = "No unowned fragments with embeddings in scope"

ABANDONED_REASON = "Session abandoned by the scheduler"


class ClusteringSessionManager:
    """
    Runs clustering sessions against a fragment store.

    Args:
        store: Fragment store
        synthesizer: External synthesizer (default: LLMSynthesizer)
        guidance: Synthesis instructions (default: loaded by PromptManager)
        notifier: Event sink (default: log only)
        executor: Pool for the CPU-bound partition step
            (default: ProcessPoolExecutor sized to the CPU count)
    """

    def __init__(
        self,
        store: FragmentStore,
        synthesizer: Optional[Synthesizer] = None,
        guidance: Optional[SynthesisGuidance] = None,
        notifier: Optional[NotificationSink] = None,
        executor: Optional[Executor] = None,
    ):
        self.store = store
        self._synthesizer = synthesizer
        self._guidance = guidance
        self.notifier = notifier or LoggingNotificationSink()
        self._executor = executor
        self._owns_executor = executor is None

    @property
    def synthesizer(self) -> Synthesizer:
        if self._synthesizer is None:
            self._synthesizer = LLMSynthesizer()
        return self._synthesizer

    @property
    def guidance(self) -> SynthesisGuidance:
        if self._guidance is None:
            self._guidance = PromptManager().build_guidance()
        return self._guidance

    @property
    def executor(self) -> Executor:
        if self._executor is None:
            workers = os.cpu_count() or 1
            logger.info(f"Starting partition worker pool ({workers} processes)")
            self._executor = ProcessPoolExecutor(max_workers=workers)
        return self._executor

    def close(self) -> None:
        """Shut down the worker pool if this manager created it."""
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    # Public operations

    def start_session(self, config: Union[ClusteringConfig, Mapping[str, Any]]) -> ClusteringSession:
        """
        Create a Pending session.

        Raises:
            ConfigurationError: If the configuration is invalid. The session is
                recorded as Failed and its id is carried on the exception.
        """
        raw = config.to_dict() if isinstance(config, ClusteringConfig) else dict(config)
        session = ClusteringSession(config=raw)

        try:
            parsed = config if isinstance(config, ClusteringConfig) else ClusteringConfig.from_dict(raw)
            parsed.validate()
        except ConfigurationError as e:
            session.status = SessionStatus.FAILED
            session.error = e.message
            session.completed_at = _utc_now()
            self.store.create_session(session)
            logger.error(f"Session {session.id} rejected: {e.message}")
            safe_publish(self.notifier, EventKind.SESSION_FAILED, session.id, e.message)
            raise ConfigurationError(e.message, session_id=session.id) from e

        session.config = parsed.to_dict()
        self.store.create_session(session)
        logger.info(f"Created clustering session {session.id} ({parsed.algorithm.value})")
        return session

    def run_session(self, session_id: str, cancel_event: Optional[threading.Event] = None) -> ClusteringSession:
        """
        Execute a Pending session to a terminal state.

        An empty claim ends the session as Failed with a reason and returns
        normally. Any exception, interrupts included, ends it as Failed after
        rollback and is re-raised.

        Raises:
            KeyError: If the session does not exist
            SessionStateError: If the session is not Pending, another
                invocation started it first, or it was abandoned while running
        """
        session = self.store.get_session(session_id)
        if session.status != SessionStatus.PENDING:
            raise SessionStateError(
                f"Session {session_id} is {session.status.value}, only pending sessions can run",
                session_id=session_id,
            )

        config = ClusteringConfig.from_dict(session.config).validate()

        session.status = SessionStatus.RUNNING
        session.started_at = _utc_now()
        if not self.store.transition_session(session, SessionStatus.PENDING):
            raise SessionStateError(
                f"Session {session_id} was started by another invocation",
                session_id=session_id,
            )
        safe_publish(self.notifier, EventKind.SESSION_STARTED, session.id, f"Clustering with {config.algorithm.value}")

        logger.info("=" * 60)
        logger.info(f"CLUSTERING SESSION {session.id} - START")
        logger.info("=" * 60)
        start_time = time.time()

        try:
            logger.info("[Step 1/4] Claiming unowned fragments...")
            scope = ScopeFilter(fields=dict(config.scope)) if config.scope else None
            fragments = self.store.claim_unowned(scope, session.id)
            session.fragment_count = len(fragments)

            if not fragments:
                logger.warning(f"Session {session.id}: {EMPTY_CLAIM_REASON}")
                return self._mark_failed(session, EMPTY_CLAIM_REASON)

            self._check_cancelled(cancel_event, session.id)

            logger.info(f"[Step 2/4] Partitioning {len(fragments)} fragments...")
            partition = self._compute_partition(fragments, config, cancel_event, session.id)
            self._check_cancelled(cancel_event, session.id)

            logger.info(f"[Step 3/4] Persisting {partition.n_clusters} clusters...")
            clusters = self._persist_clusters(session, fragments, partition, config)

            logger.info(f"[Step 4/4] Synthesizing knowledge units for {len(clusters)} clusters...")
            coordinator = SynthesisCoordinator(self.store, self.synthesizer, self.guidance)
            outcome = coordinator.synthesize_session(session.id, clusters, cancel_event)
            session.units_created = len(outcome.units)

            # Nothing may stay claimed once the session is terminal
            self.store.release_session(session.id)

            session.status = SessionStatus.COMPLETED
            session.completed_at = _utc_now()
            self._save_running(session)

        except BaseException as e:
            reason = _failure_reason(e)
            logger.error(f"Session {session.id} failed: {reason}", exc_info=not isinstance(e, ClusteringError))
            self._rollback(session.id)
            session.units_created = 0
            session.clusters_found = 0
            self._mark_failed(session, reason)
            if isinstance(e, ClusteringError) and e.session_id is None:
                e.session_id = session.id
            raise

        safe_publish(
            self.notifier, EventKind.SESSION_COMPLETED, session.id,
            f"{session.clusters_found} clusters, {session.units_created} knowledge units",
        )

        elapsed = time.time() - start_time
        logger.info("=" * 60)
        logger.info(f"CLUSTERING SESSION {session.id} - COMPLETE")
        logger.info("=" * 60)
        logger.info(f"Total time: {elapsed:.2f} seconds")
        logger.info(f"Fragments claimed: {session.fragment_count}")
        logger.info(f"Clusters found: {session.clusters_found}")
        logger.info(f"Knowledge units created: {session.units_created}")
        logger.info(f"Silhouette score: {partition.quality_metrics.get('silhouette_score', 'N/A')}")
        logger.info("=" * 60)
        return session

    def get_session_status(self, session_id: str) -> Dict[str, Any]:
        """
        Raises:
            KeyError: If the session does not exist
        """
        return self.store.get_session(session_id).status_report()

    def abandon_session(
        self,
        session_id: str,
        reason: str = ABANDONED_REASON,
        min_running_seconds: Optional[float] = None,
    ) -> ClusteringSession:
        """
        Fail a Running session whose worker is gone and undo what it wrote.

        The scheduler calls this for a session stuck in Running past its own
        timeout. Claims are released, so a fresh session can pick up the same
        fragments. A worker that is still alive notices at its next status
        write and rolls back as well.

        Args:
            session_id: Session to abandon
            reason: Error recorded on the session
            min_running_seconds: Refuse sessions that started more recently

        Raises:
            KeyError: If the session does not exist
            SessionStateError: If the session is not Running, has not run for
                min_running_seconds, or finished while being abandoned
        """
        session = self.store.get_session(session_id)
        if session.status != SessionStatus.RUNNING:
            raise SessionStateError(
                f"Session {session_id} is {session.status.value}, only running sessions can be abandoned",
                session_id=session_id,
            )
        if min_running_seconds is not None and session.started_at is not None:
            running_for = (_utc_now() - session.started_at).total_seconds()
            if running_for < min_running_seconds:
                raise SessionStateError(
                    f"Session {session_id} has been running for {running_for:.0f}s, "
                    f"less than {min_running_seconds:.0f}s",
                    session_id=session_id,
                )

        session.status = SessionStatus.FAILED
        session.error = reason
        session.completed_at = _utc_now()
        session.units_created = 0
        session.clusters_found = 0
        if not self.store.transition_session(session, SessionStatus.RUNNING):
            raise SessionStateError(
                f"Session {session_id} finished before it could be abandoned",
                session_id=session_id,
            )

        logger.warning(f"Abandoned session {session_id}: {reason}")
        self._rollback(session_id)
        safe_publish(self.notifier, EventKind.SESSION_FAILED, session_id, reason)
        return session

    def find_similar(
        self,
        query: Sequence[float],
        limit: int = 10,
        min_similarity: Optional[float] = None,
        exclude_owned: bool = False,
        scope_filter: Optional[ScopeFilter] = None,
    ) -> List[Tuple[str, float]]:
        """
        Nearest fragments to a query vector from the store.

        Returns:
            (fragment_id, cosine distance) pairs ascending by distance then id

        Raises:
            ValueError: If limit < 1 or min_similarity is outside [0, 1]
        """
        if limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")
        max_distance = max_distance_for(min_similarity) if min_similarity is not None else None
        return self.store.query_vector_neighbors(
            query,
            max_distance=max_distance,
            exclude_owned=exclude_owned,
            scope_filter=scope_filter,
            limit=limit,
        )

    def retract_knowledge_unit(self, unit_id: str) -> List[str]:
        """Delete a unit and return its fragments to the pool (for corrections)."""
        return self.store.retract_knowledge_unit(unit_id)

    # Internals

    def _check_cancelled(self, cancel_event: Optional[threading.Event], session_id: str) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise SessionCancelledError("Session cancelled", session_id=session_id)

    def _compute_partition(
        self,
        fragments: List[Fragment],
        config: ClusteringConfig,
        cancel_event: Optional[threading.Event],
        session_id: str,
    ) -> Partition:
        future = self.executor.submit(compute_partition, fragments, config.to_dict())
        while not wait([future], timeout=CANCEL_POLL_INTERVAL).done:
            if cancel_event is not None and cancel_event.is_set():
                future.cancel()
                raise SessionCancelledError("Session cancelled during partitioning", session_id=session_id)
        try:
            return future.result()
        except ClusteringError:
            raise
        except Exception as e:
            raise AlgorithmError(f"Partitioning failed: {e}", session_id=session_id) from e

    def _persist_clusters(
        self,
        session: ClusteringSession,
        fragments: List[Fragment],
        partition: Partition,
        config: ClusteringConfig,
    ) -> List[Cluster]:
        by_id = {f.id: f for f in fragments}
        clusters = []
        for ordinal, members in enumerate(partition.clusters, start=1):
            embeddings = np.vstack([by_id[fid].embedding for fid in members])
            centroid, intra_distance = compute_cluster_statistics(embeddings, config.metric)
            clusters.append(self.store.write_cluster(
                session.id, ordinal, members,
                centroid=centroid,
                intra_cluster_distance=intra_distance,
            ))

        released = self.store.release(partition.unclustered, session_id=session.id)
        logger.info(f"Released {released} unclustered fragments")

        session.clusters_found = len(clusters)
        self._save_running(session)
        safe_publish(
            self.notifier, EventKind.CLUSTER_BATCH_READY, session.id,
            f"{len(clusters)} clusters ready for synthesis",
        )
        return clusters

    def _rollback(self, session_id: str) -> None:
        """Undo everything a session wrote. Safe to run more than once."""
        steps = (
            ("retract knowledge units", self._retract_session_units),
            ("delete clusters", lambda sid: self.store.delete_clusters(sid)),
            ("release claims", lambda sid: self.store.release_session(sid)),
        )
        for name, step in steps:
            try:
                step(session_id)
            except Exception as e:
                logger.error(f"Rollback of session {session_id}: could not {name}: {e}", exc_info=True)

    def _retract_session_units(self, session_id: str) -> None:
        units = self.store.list_knowledge_units(session_id=session_id)
        for unit in units:
            self.store.retract_knowledge_unit(unit.id)
        if units:
            logger.info(f"Retracted {len(units)} knowledge units of session {session_id}")

    def _save_running(self, session: ClusteringSession) -> None:
        """Persist a session this worker is running; fails if it was abandoned."""
        if not self.store.transition_session(session, SessionStatus.RUNNING):
            raise SessionStateError(f"Session {session.id} is no longer running", session_id=session.id)

    def _mark_failed(self, session: ClusteringSession, reason: str) -> ClusteringSession:
        session.status = SessionStatus.FAILED
        session.error = reason
        session.completed_at = _utc_now()
        if not self.store.transition_session(session, SessionStatus.RUNNING):
            logger.warning(f"Session {session.id} already left running, keeping its recorded outcome")
            return self.store.get_session(session.id)
        safe_publish(self.notifier, EventKind.SESSION_FAILED, session.id, reason)
        return session


def _failure_reason(error: BaseException) -> str:
    if isinstance(error, ClusteringError):
        return error.message
    detail = str(error)
    return f"{type(error).__name__}: {detail}" if detail else type(error).__name__
