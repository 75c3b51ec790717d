"""
Synthesis coordination: cluster -> synthesizer -> validated knowledge units.

Runs in two phases. Phase 1 calls the synthesizer for every cluster and
validates each reply; phase 2 commits the accepted units. Nothing is
committed until every call of the session has returned and been validated.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence, Tuple

from src.clustering.config import MIN_FRAGMENTS_PER_UNIT
from src.clustering.exceptions import ClusteringError, ExternalSynthesizerError, SessionCancelledError
from src.clustering.models import Cluster, KnowledgeUnit
from src.store.base import CommitResult, FragmentStore

from .schema import (
    CandidateUnit,
    SynthesisFragment,
    SynthesisGuidance,
    SynthesisRequest,
    SynthesisResponse,
)
from .synthesizer import Synthesizer

logger = logging.getLogger(__name__)

# Seconds between cancellation checks while a synthesizer call is in flight
CANCEL_POLL_INTERVAL = 0.1


@dataclass
class SynthesisOutcome:
    units: List[KnowledgeUnit] = field(default_factory=list)
    rejected: int = 0
    conflicts: int = 0
    released: int = 0


class SynthesisCoordinator:
    """
    Validates untrusted synthesizer output and commits knowledge units.

    Args:
        store: Fragment store (reads, commits, releases)
        synthesizer: External synthesizer
        guidance: Instructions sent with every request; its category names,
            when non-empty, restrict the categories a unit may use
    """

    def __init__(self, store: FragmentStore, synthesizer: Synthesizer, guidance: SynthesisGuidance):
        self.store = store
        self.synthesizer = synthesizer
        self.guidance = guidance
        self._categories: Dict[str, str] = {name.lower(): name for name in guidance.category_names}

    def build_request(self, cluster: Cluster) -> SynthesisRequest:
        fragments = self.store.read_fragments(cluster.fragment_ids)
        return SynthesisRequest(
            cluster_id=cluster.id,
            guidance=self.guidance,
            fragments=[SynthesisFragment.from_fragment(f) for f in fragments],
        )

    def validate_candidates(self, cluster: Cluster, response: SynthesisResponse) -> List[CandidateUnit]:
        """
        Apply membership rules to candidates, in response order.

        1. A candidate naming any fragment outside the cluster is dropped.
        2. Fragments already taken by an earlier candidate are removed (first wins).
        3. A candidate left with fewer than two fragments is dropped.
        4. A candidate with an unknown category is dropped (when categories are configured).

        Returns:
            Accepted candidates with their final fragment ids and canonical category
        """
        members = set(cluster.fragment_ids)
        assigned: set = set()
        accepted: List[CandidateUnit] = []

        for position, candidate in enumerate(response.candidates, start=1):
            label = f"Cluster {cluster.ordinal} candidate {position}"

            foreign = [fid for fid in candidate.fragment_ids if fid not in members]
            if foreign:
                logger.warning(f"{label}: rejected, fragments outside cluster: {foreign}")
                continue

            fragment_ids = list(dict.fromkeys(candidate.fragment_ids))
            taken = [fid for fid in fragment_ids if fid in assigned]
            if taken:
                logger.warning(f"{label}: quality issue, fragments already assigned earlier: {taken}")
                fragment_ids = [fid for fid in fragment_ids if fid not in assigned]

            if len(fragment_ids) < MIN_FRAGMENTS_PER_UNIT:
                logger.warning(f"{label}: rejected, only {len(fragment_ids)} fragments remain")
                continue

            category = candidate.category
            if self._categories:
                canonical = self._categories.get(category.lower())
                if canonical is None:
                    logger.warning(f"{label}: rejected, unknown category {category!r}")
                    continue
                category = canonical

            accepted.append(replace(candidate, fragment_ids=fragment_ids, category=category))
            assigned.update(fragment_ids)

        return accepted

    def _call(
        self,
        executor: ThreadPoolExecutor,
        request: SynthesisRequest,
        cancel_event: Optional[threading.Event],
    ) -> SynthesisResponse:
        future = executor.submit(self.synthesizer.synthesize, request)
        while not wait([future], timeout=CANCEL_POLL_INTERVAL).done:
            if cancel_event is not None and cancel_event.is_set():
                future.cancel()
                raise SessionCancelledError(f"Cancelled while synthesizing cluster {request.cluster_id}")
        try:
            return future.result()
        except ClusteringError:
            raise
        except Exception as e:
            raise ExternalSynthesizerError(f"Synthesizer failed for cluster {request.cluster_id}: {e}") from e

    def synthesize_session(
        self,
        session_id: str,
        clusters: Sequence[Cluster],
        cancel_event: Optional[threading.Event] = None,
    ) -> SynthesisOutcome:
        """
        Synthesize and commit knowledge units for all clusters of a session.

        Fragments of a cluster that end up in no committed unit are released.

        Raises:
            ExternalSynthesizerError: If any synthesizer call fails
            SessionCancelledError: If cancel_event is set before commits start
        """
        outcome = SynthesisOutcome()
        planned: List[Tuple[Cluster, List[CandidateUnit]]] = []

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"synth-{session_id[:8]}")
        try:
            for cluster in clusters:
                request = self.build_request(cluster)
                response = self._call(executor, request, cancel_event)
                accepted = self.validate_candidates(cluster, response)
                outcome.rejected += len(response.rejected) + len(response.candidates) - len(accepted)
                logger.info(
                    f"Cluster {cluster.ordinal}: {len(accepted)} accepted, "
                    f"{len(response.candidates) - len(accepted) + len(response.rejected)} rejected"
                )
                planned.append((cluster, accepted))
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        if cancel_event is not None and cancel_event.is_set():
            raise SessionCancelledError("Cancelled before committing knowledge units")

        for cluster, accepted in planned:
            committed: set = set()
            for candidate in accepted:
                unit = KnowledgeUnit(
                    title=candidate.title,
                    summary=candidate.summary,
                    category=candidate.category,
                    content=candidate.content,
                    confidence=candidate.confidence,
                    fragment_ids=list(candidate.fragment_ids),
                    confidence_comment=candidate.confidence_comment,
                    clustering_rationale=candidate.clustering_rationale,
                    cluster_id=cluster.id,
                    session_id=session_id,
                )
                result = self.store.commit_knowledge_unit(unit, candidate.fragment_ids)
                if result == CommitResult.SUCCESS:
                    outcome.units.append(unit)
                    committed.update(candidate.fragment_ids)
                else:
                    outcome.conflicts += 1
                    logger.warning(f"Cluster {cluster.ordinal}: unit '{unit.title}' dropped on ownership conflict")

            leftover = [fid for fid in cluster.fragment_ids if fid not in committed]
            if leftover:
                outcome.released += self.store.release(leftover, session_id=session_id)

        logger.info(
            f"Session {session_id}: {len(outcome.units)} units committed, "
            f"{outcome.rejected} candidates rejected, {outcome.conflicts} conflicts"
        )
        return outcome
