"""
Clustering algorithms behind a single partition contract.

Every algorithm takes the working set, its precomputed distance matrix and
the session configuration, and returns a Partition: clusters of fragment ids
(ordered by the input position of their first member) plus the unclustered
remainder. Groups outside [min_cluster_size, max_cluster_size] are demoted
to unclustered.
"""

import heapq
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from sklearn.cluster import DBSCAN, KMeans
from sklearn.preprocessing import normalize

from .config import ClusteringConfig
from .distance_matrix import DistanceMatrix
from .exceptions import AlgorithmError
from .linkage import get_linkage
from .models import ClusteringAlgorithmType, DistanceMetric, Fragment, Partition

logger = logging.getLogger(__name__)

# Merge costs are compared at this precision so float noise cannot reorder ties
COST_DECIMALS = 12

# Stale heap entries are dropped once they outnumber live pairs by this factor
STALE_HEAP_FACTOR = 4


class MergeOrder:
    """
    Tie-break key of a candidate merge: the sorted member ids of the merged
    cluster. The smallest id is kept eagerly; the full id union is built only
    when two candidates share both cost and smallest id.
    """

    __slots__ = ("first", "_ids", "_left", "_right", "_union")

    def __init__(self, first: str, ids: Sequence[str], left: List[int], right: List[int]):
        self.first = first
        self._ids = ids
        self._left = left
        self._right = right
        self._union: Optional[Tuple[str, ...]] = None

    def union(self) -> Tuple[str, ...]:
        if self._union is None:
            self._union = tuple(sorted(self._ids[i] for i in self._left + self._right))
        return self._union

    def __eq__(self, other: "MergeOrder") -> bool:
        return self.first == other.first and self.union() == other.union()

    def __lt__(self, other: "MergeOrder") -> bool:
        if self.first != other.first:
            return self.first < other.first
        return self.union() < other.union()


def build_partition(ids: Sequence[str], groups: List[List[int]], config: ClusteringConfig) -> Partition:
    """
    Turn index groups into a Partition, applying the cluster size filters.

    Args:
        ids: Fragment ids in matrix order
        groups: Lists of row indices, one per raw cluster
        config: Supplies min_cluster_size / max_cluster_size

    Returns:
        Partition with clusters ordered by first member position
    """
    kept: List[List[int]] = []
    demoted = 0
    for group in groups:
        size = len(group)
        if size < config.min_cluster_size:
            continue
        if config.max_cluster_size is not None and size > config.max_cluster_size:
            demoted += 1
            continue
        kept.append(sorted(group))

    if demoted:
        logger.info(f"Demoted {demoted} clusters above max_cluster_size={config.max_cluster_size}")

    kept.sort(key=lambda members: members[0])
    in_cluster = {i for members in kept for i in members}

    return Partition(
        clusters=[[ids[i] for i in members] for members in kept],
        unclustered=[fid for i, fid in enumerate(ids) if i not in in_cluster],
    )


class ClusteringAlgorithm(ABC):
    """Common interface: partition(fragments, matrix, config) -> Partition."""

    name: str = ""

    def partition(
        self,
        fragments: Sequence[Fragment],
        matrix: DistanceMatrix,
        config: ClusteringConfig,
    ) -> Partition:
        if [f.id for f in fragments] != matrix.ids:
            raise ValueError("Distance matrix does not match the fragment working set")

        if len(matrix) == 0:
            return Partition(clusters=[], unclustered=[])

        if not np.all(np.isfinite(matrix.values)):
            raise AlgorithmError(f"{self.name}: distance matrix contains non-finite values")

        if len(matrix) == 1:
            return Partition(clusters=[], unclustered=list(matrix.ids))

        groups = self.cluster_indices(matrix, config)
        partition = build_partition(matrix.ids, groups, config)
        logger.info(
            f"{self.name}: {partition.n_clusters} clusters, "
            f"{len(partition.unclustered)} unclustered of {len(matrix)} fragments"
        )
        return partition

    @abstractmethod
    def cluster_indices(self, matrix: DistanceMatrix, config: ClusteringConfig) -> List[List[int]]:
        """Return raw groups of matrix row indices (before size filtering)."""


class HierarchicalAgglomerative(ClusteringAlgorithm):
    """
    Bottom-up merging of the cheapest linkage pair.

    Stops when the next merge cost exceeds distance_threshold or the cluster
    count reaches n_clusters. Equal costs are resolved by the sorted union of
    member ids. Working sets larger than max_bucket_size are first split into
    K-Means buckets when clustering by threshold.
    """

    name = "hierarchical_agglomerative"

    def cluster_indices(self, matrix: DistanceMatrix, config: ClusteringConfig) -> List[List[int]]:
        n = len(matrix)
        if config.n_clusters is None and n > config.max_bucket_size:
            buckets = kmeans_buckets(matrix, config)
            logger.info(f"Running HAC on {len(buckets)} buckets")
            groups: List[List[int]] = []
            for bucket in buckets:
                sub_matrix = matrix.subset(bucket)
                for local in self._agglomerate(sub_matrix, config):
                    groups.append([bucket[i] for i in local])
            return groups

        return self._agglomerate(matrix, config)

    def _agglomerate(self, matrix: DistanceMatrix, config: ClusteringConfig) -> List[List[int]]:
        linkage = get_linkage(config.linkage)
        threshold = config.distance_threshold
        target = config.n_clusters
        ids = matrix.ids

        members: Dict[int, List[int]] = {i: [i] for i in range(len(matrix))}
        first_id: Dict[int, str] = {i: ids[i] for i in range(len(matrix))}
        next_key = len(matrix)
        heap: List[Tuple[float, MergeOrder, int, int]] = []

        def push(a: int, b: int):
            cost = round(linkage(matrix, members[a], members[b]), COST_DECIMALS)
            order = MergeOrder(min(first_id[a], first_id[b]), ids, members[a], members[b])
            heapq.heappush(heap, (cost, order, a, b))

        keys = list(members)
        for x in range(len(keys)):
            for y in range(x + 1, len(keys)):
                push(keys[x], keys[y])

        merges = 0
        while len(members) > 1 and heap:
            if target is not None and len(members) <= target:
                break

            cost, _order, a, b = heapq.heappop(heap)
            if a not in members or b not in members:
                continue  # stale

            if threshold is not None and cost > threshold:
                break

            merged = sorted(members.pop(a) + members.pop(b))
            new_key = next_key
            next_key += 1
            first_id[new_key] = min(first_id.pop(a), first_id.pop(b))
            others = list(members)
            members[new_key] = merged
            for other in others:
                push(other, new_key)
            merges += 1

            live_pairs = len(members) * (len(members) - 1) // 2
            if len(heap) > STALE_HEAP_FACTOR * max(live_pairs, 1):
                heap[:] = [entry for entry in heap if entry[2] in members and entry[3] in members]
                heapq.heapify(heap)

        logger.debug(f"HAC performed {merges} merges, {len(members)} groups remain")
        return list(members.values())


class KMeansClustering(ClusteringAlgorithm):
    """
    K-Means with k = n_clusters, or int(sqrt(n)) when unset, capped at n.

    Cosine runs spherical k-means on L2-normalized vectors; Euclidean uses
    scikit-learn KMeans.
    """

    name = "kmeans"

    def cluster_indices(self, matrix: DistanceMatrix, config: ClusteringConfig) -> List[List[int]]:
        n = len(matrix)
        k = config.n_clusters if config.n_clusters is not None else max(1, int(np.sqrt(n)))
        k = min(k, n)
        logger.info(f"Running K-Means (k={k}, metric={matrix.metric.value}) on {n} fragments")

        if matrix.metric == DistanceMetric.COSINE:
            labels = spherical_kmeans(
                matrix.embeddings, k,
                max_iterations=config.max_iterations,
                random_state=config.random_state,
            )
        else:
            model = KMeans(
                n_clusters=k,
                random_state=config.random_state,
                n_init=10,
                max_iter=config.max_iterations,
            )
            labels = model.fit_predict(matrix.embeddings)

        return _groups_from_labels(labels)


class DBSCANClustering(ClusteringAlgorithm):
    """Density clustering on the precomputed matrix; noise points are unclustered."""

    name = "dbscan"

    def cluster_indices(self, matrix: DistanceMatrix, config: ClusteringConfig) -> List[List[int]]:
        logger.info(f"Running DBSCAN (eps={config.eps}, min_points={config.min_points})")
        model = DBSCAN(eps=config.eps, min_samples=config.min_points, metric="precomputed")
        labels = model.fit_predict(matrix.values)
        n_noise = int(np.sum(labels == -1))
        if n_noise:
            logger.info(f"DBSCAN marked {n_noise} fragments as noise")
        return _groups_from_labels(labels)


def _groups_from_labels(labels: np.ndarray) -> List[List[int]]:
    groups: Dict[int, List[int]] = {}
    for index, label in enumerate(labels):
        if label == -1:
            continue
        groups.setdefault(int(label), []).append(index)
    return list(groups.values())


def _normalize_rows(vectors: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    norms = np.where(norms == 0, 1, norms)
    return vectors / norms


def _kmeans_plus_plus(vectors: np.ndarray, k: int, rng: np.random.Generator) -> np.ndarray:
    """Cosine-aware k-means++ seeding on unit vectors."""
    n_samples = vectors.shape[0]
    centroids = np.zeros((k, vectors.shape[1]), dtype=vectors.dtype)
    centroids[0] = vectors[rng.integers(0, n_samples)]

    for i in range(1, k):
        sims = np.clip(vectors @ centroids[:i].T, -1.0, 1.0)
        distances = np.maximum(1.0 - sims.max(axis=1), 1e-9)
        centroids[i] = vectors[rng.choice(n_samples, p=distances / distances.sum())]

    return centroids


def spherical_kmeans(
    embeddings: np.ndarray,
    k: int,
    max_iterations: int = 100,
    random_state: int = 42,
) -> np.ndarray:
    """
    Spherical k-means: cosine assignment, re-normalized mean centroids.

    Converges when assignments stop changing. Reaching max_iterations is not
    an error: the assignment with the highest total similarity is returned.

    Args:
        embeddings: Vectors (N x D), normalized internally
        k: Number of clusters (1 <= k <= N)
        max_iterations: Iteration cap
        random_state: Seed for k-means++ initialization

    Returns:
        Labels of shape (N,) in [0, k)
    """
    vectors = _normalize_rows(np.asarray(embeddings, dtype=np.float64))
    rng = np.random.default_rng(random_state)
    centroids = _kmeans_plus_plus(vectors, k, rng)

    labels: Optional[np.ndarray] = None
    best_labels: Optional[np.ndarray] = None
    best_objective = -np.inf

    for iteration in range(max_iterations):
        sims = vectors @ centroids.T
        new_labels = np.argmax(sims, axis=1).astype(int)
        objective = float(sims[np.arange(len(vectors)), new_labels].sum())

        if objective > best_objective:
            best_objective = objective
            best_labels = new_labels

        if labels is not None and np.array_equal(new_labels, labels):
            logger.debug(f"Spherical k-means converged after {iteration + 1} iterations")
            return new_labels
        labels = new_labels

        for c in range(k):
            mask = labels == c
            if not np.any(mask):
                continue  # empty cluster keeps its previous centroid
            mean = vectors[mask].mean(axis=0)
            norm = np.linalg.norm(mean)
            if norm > 0:
                centroids[c] = mean / norm

    logger.info(f"Spherical k-means hit max_iterations={max_iterations}; keeping best assignment")
    return best_labels


def kmeans_buckets(matrix: DistanceMatrix, config: ClusteringConfig) -> List[List[int]]:
    """
    Split a large working set into buckets no larger than max_bucket_size.

    Oversized batches are split by K-Means into floor(n / target_bucket_size)
    sub-buckets, repeatedly, until every bucket fits.

    Returns:
        Lists of matrix row indices
    """
    if matrix.metric == DistanceMetric.COSINE:
        vectors = normalize(matrix.embeddings, norm="l2")
    else:
        vectors = matrix.embeddings

    queue: List[List[int]] = [list(range(len(matrix)))]
    buckets: List[List[int]] = []

    while queue:
        batch = queue.pop(0)
        if len(batch) <= config.max_bucket_size:
            buckets.append(batch)
            continue

        n_sub = max(2, len(batch) // config.target_bucket_size)
        logger.info(f"Splitting batch of {len(batch)} fragments into {n_sub} sub-buckets")
        model = KMeans(n_clusters=n_sub, random_state=config.random_state, n_init=10)
        labels = model.fit_predict(vectors[batch])
        sub_buckets = [[batch[i] for i in group] for group in _groups_from_labels(labels)]

        if len(sub_buckets) < 2:
            # Indistinguishable vectors; fall back to fixed-size chunks
            size = config.target_bucket_size
            sub_buckets = [batch[i:i + size] for i in range(0, len(batch), size)]

        queue.extend(sub_buckets)

    logger.info(
        f"K-means bucketing complete: {len(buckets)} buckets "
        f"(avg size: {np.mean([len(b) for b in buckets]):.0f})"
    )
    return buckets


ALGORITHMS = {
    ClusteringAlgorithmType.HIERARCHICAL_AGGLOMERATIVE: HierarchicalAgglomerative,
    ClusteringAlgorithmType.KMEANS: KMeansClustering,
    ClusteringAlgorithmType.DBSCAN: DBSCANClustering,
}


def get_algorithm(config: ClusteringConfig) -> ClusteringAlgorithm:
    """Instantiate the algorithm selected by the configuration."""
    return ALGORITHMS[config.algorithm]()
