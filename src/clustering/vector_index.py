"""
Vector similarity search over fragment embeddings.

Distances are cosine distances in [0, 2]; similarity is 1 - distance/2 in
[0, 1]. A minimum similarity is converted to a maximum distance with
(1 - min_similarity) * 2 and compared inclusively.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
from sklearn.metrics.pairwise import cosine_distances, euclidean_distances

from .models import DistanceMetric, Fragment

logger = logging.getLogger(__name__)

# Floating point noise below this is treated as an exact match
DISTANCE_EPSILON = 1e-12

FragmentPredicate = Callable[[Fragment], bool]


def max_distance_for(min_similarity: float) -> float:
    """Convert a minimum similarity in [0, 1] to the maximum cosine distance allowed."""
    if not 0.0 <= min_similarity <= 1.0:
        raise ValueError(f"min_similarity must be between 0.0 and 1.0, got {min_similarity}")
    return (1.0 - min_similarity) * 2.0


def similarity_from_distance(distance: float) -> float:
    """Convert a cosine distance in [0, 2] to a similarity in [0, 1]."""
    return 1.0 - distance / 2.0


def distances_to(
    query: np.ndarray,
    vectors: np.ndarray,
    metric: DistanceMetric = DistanceMetric.COSINE,
) -> np.ndarray:
    """
    Distances from one query vector to each row of a candidate matrix.

    Args:
        query: Query vector of shape (n_features,)
        vectors: Candidate matrix of shape (n_candidates, n_features)
        metric: Distance metric

    Returns:
        Array of shape (n_candidates,)
    """
    query = np.asarray(query, dtype=np.float64).reshape(1, -1)
    if metric == DistanceMetric.COSINE:
        distances = cosine_distances(query, vectors)[0]
        distances = np.clip(distances, 0.0, 2.0)
    else:
        distances = euclidean_distances(query, vectors)[0]
    distances[np.abs(distances) < DISTANCE_EPSILON] = 0.0
    return distances


def rank_neighbors(
    pairs: Iterable[Tuple[str, float]],
    limit: int,
    max_distance: Optional[float] = None,
) -> List[Tuple[str, float]]:
    """
    Apply the distance cutoff, then order ascending by (distance, fragment id).

    Shared by every search backend so ranking and thresholding behave the same.
    """
    kept = [
        (fragment_id, float(distance))
        for fragment_id, distance in pairs
        if max_distance is None or distance <= max_distance
    ]
    kept.sort(key=lambda pair: (pair[1], pair[0]))
    return kept[:limit]


@dataclass
class ScopeFilter:
    """
    Composable restriction on which fragments take part in a search or claim.

    Field constraints are equality checks against fragment attributes or
    metadata keys and can be pushed down to the store as query filters.
    Predicates are arbitrary callables evaluated in process.
    """
    fields: Dict[str, Any] = field(default_factory=dict)
    predicates: List[FragmentPredicate] = field(default_factory=list)

    def matches(self, fragment: Fragment) -> bool:
        for name, expected in self.fields.items():
            if hasattr(fragment, name) and name != "metadata":
                actual = getattr(fragment, name)
            else:
                actual = fragment.metadata.get(name)
            if actual != expected:
                return False
        return all(predicate(fragment) for predicate in self.predicates)

    def and_(self, other: Optional["ScopeFilter"]) -> "ScopeFilter":
        """Combine two filters; both must match."""
        if other is None:
            return self
        conflicting = {
            k for k in self.fields.keys() & other.fields.keys()
            if self.fields[k] != other.fields[k]
        }
        combined_fields = {**self.fields, **other.fields}
        predicates = self.predicates + other.predicates
        if conflicting:
            # Contradictory equality constraints can never match
            predicates = predicates + [lambda _fragment: False]
        return ScopeFilter(fields=combined_fields, predicates=predicates)

    @classmethod
    def of(cls, *predicates: FragmentPredicate, **fields: Any) -> "ScopeFilter":
        return cls(fields=dict(fields), predicates=list(predicates))

    @property
    def is_empty(self) -> bool:
        return not self.fields and not self.predicates


class VectorIndex:
    """
    Exact nearest-neighbor search over an in-process set of fragments.

    Fragments without an embedding are dropped at construction and are
    never returned.
    """

    def __init__(self, fragments: Iterable[Fragment]):
        self._fragments: List[Fragment] = [f for f in fragments if f.has_embedding]

    def __len__(self) -> int:
        return len(self._fragments)

    def find_similar(
        self,
        query: Sequence[float],
        limit: int = 10,
        min_similarity: Optional[float] = None,
        exclude_owned: bool = False,
        scope_filter: Optional[ScopeFilter] = None,
    ) -> List[Tuple[str, float]]:
        """
        Find fragments nearest to a query vector.

        Args:
            query: Query embedding
            limit: Maximum number of results
            min_similarity: Optional similarity floor in [0, 1]
            exclude_owned: Skip fragments owned by a knowledge unit or claimed by a session
            scope_filter: Optional restriction evaluated before distances are computed

        Returns:
            List of (fragment_id, cosine_distance), ascending by distance then id.
            Empty when nothing matches.

        Raises:
            ValueError: If limit < 1, min_similarity is out of range, or the query
                is empty or of the wrong dimension
        """
        max_distance = max_distance_for(min_similarity) if min_similarity is not None else None
        return self.search(
            query,
            limit=limit,
            max_distance=max_distance,
            exclude_owned=exclude_owned,
            scope_filter=scope_filter,
        )

    def search(
        self,
        query: Sequence[float],
        limit: int = 10,
        max_distance: Optional[float] = None,
        exclude_owned: bool = False,
        scope_filter: Optional[ScopeFilter] = None,
    ) -> List[Tuple[str, float]]:
        """Same as find_similar, with the cutoff given directly as a cosine distance."""
        if limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")
        query_vector = np.asarray(query, dtype=np.float64)
        if query_vector.ndim != 1 or query_vector.size == 0:
            raise ValueError(f"Query must be a non-empty 1D vector, got shape {query_vector.shape}")

        candidates = [
            f for f in self._fragments
            if (not exclude_owned or f.is_available)
            and (scope_filter is None or scope_filter.matches(f))
        ]

        dimension = query_vector.size
        mismatched = [f.id for f in candidates if f.embedding.size != dimension]
        if mismatched:
            raise ValueError(
                f"Query dimension {dimension} does not match {len(mismatched)} indexed "
                f"embeddings (e.g. fragment {mismatched[0]})"
            )

        if not candidates:
            return []

        vectors = np.vstack([f.embedding for f in candidates])
        distances = distances_to(query_vector, vectors, DistanceMetric.COSINE)

        results = rank_neighbors(
            zip((f.id for f in candidates), distances),
            limit=limit,
            max_distance=max_distance,
        )
        logger.debug(
            f"find_similar: {len(candidates)} candidates, {len(results)} results "
            f"(limit={limit}, max_distance={max_distance})"
        )
        return results
