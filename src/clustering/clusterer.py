"""
Semantic clustering of fragment embeddings.

Ties together the distance matrix, the configured algorithm and quality
metrics. compute_partition() is a module-level function so it can be
submitted to a process pool.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
from sklearn.metrics import silhouette_score
from sklearn.metrics.pairwise import cosine_distances, euclidean_distances

from .algorithms import get_algorithm
from .config import ClusteringConfig
from .distance_matrix import DistanceMatrix
from .models import DistanceMetric, Fragment, Partition

logger = logging.getLogger(__name__)


class SemanticClusterer:
    """
    Semantic clustering for fragments using their embeddings.

    Supports three algorithms behind one contract:
    - hierarchical_agglomerative: threshold or target-count merging with a chosen linkage
    - kmeans: spherical k-means (cosine) or scikit-learn KMeans (euclidean)
    - dbscan: density clustering, noise left unclustered

    Args:
        config: Validated clustering configuration
    """

    def __init__(self, config: ClusteringConfig):
        self.config = config
        self.algorithm = get_algorithm(config)
        self.matrix: Optional[DistanceMatrix] = None

        logger.info(
            f"Initialized SemanticClusterer: algorithm={config.algorithm.value}, "
            f"linkage={config.linkage.value}, metric={config.metric.value}, "
            f"min_cluster_size={config.min_cluster_size}"
        )

    def cluster(self, fragments: Sequence[Fragment]) -> Partition:
        """
        Partition fragments into clusters.

        Args:
            fragments: Working set; every fragment must carry an embedding

        Returns:
            Partition with quality metrics attached

        Raises:
            ValueError: If embeddings are missing or inconsistent
            AlgorithmError: If the algorithm cannot operate on the input
        """
        fragments = list(fragments)
        logger.info(f"Clustering {len(fragments)} fragments with {self.algorithm.name}")

        self.matrix = DistanceMatrix.build(fragments, self.config.metric)
        partition = self.algorithm.partition(fragments, self.matrix, self.config)
        partition.quality_metrics = self.compute_quality_metrics(partition)
        return partition

    def compute_quality_metrics(self, partition: Partition) -> Dict[str, Any]:
        """
        Compute clustering quality metrics.

        Returns:
            Dictionary with silhouette_score, cluster size statistics and noise count

        Raises:
            ValueError: If cluster() has not been called yet
        """
        if self.matrix is None:
            raise ValueError("Must call cluster() before computing metrics")

        metrics: Dict[str, Any] = {
            "n_clusters": partition.n_clusters,
            "n_noise_points": len(partition.unclustered),
        }

        # Silhouette on clustered points only (needs 2 <= clusters < points)
        index_of = self.matrix.index_of
        clustered = [index_of[fid] for fid in partition.clustered_ids]
        labels = [label for label, members in enumerate(partition.clusters) for _ in members]
        if 2 <= partition.n_clusters < len(clustered):
            sub = self.matrix.values[np.ix_(clustered, clustered)]
            try:
                score = silhouette_score(sub, labels, metric="precomputed")
                metrics["silhouette_score"] = float(score)
                logger.info(f"Silhouette score: {score:.3f}")
            except ValueError as e:
                logger.warning(f"Failed to compute silhouette score: {e}")
                metrics["silhouette_score"] = None
        else:
            metrics["silhouette_score"] = None

        sizes = [len(members) for members in partition.clusters]
        if sizes:
            metrics["min_cluster_size"] = int(min(sizes))
            metrics["max_cluster_size"] = int(max(sizes))
            metrics["mean_cluster_size"] = float(np.mean(sizes))
            metrics["median_cluster_size"] = float(np.median(sizes))

        return metrics


def compute_partition(fragments: Sequence[Fragment], config: Dict[str, Any]) -> Partition:
    """Process-pool entry point: build a clusterer from a config dict and run it."""
    clusterer = SemanticClusterer(ClusteringConfig.from_dict(config).validate())
    return clusterer.cluster(fragments)


def compute_cluster_statistics(
    embeddings: np.ndarray,
    metric: DistanceMetric = DistanceMetric.COSINE,
) -> Tuple[List[float], float]:
    """
    Centroid and mean member-to-centroid distance of one cluster.

    For cosine the centroid is the re-normalized mean vector.

    Returns:
        (centroid, intra_cluster_distance)
    """
    vectors = np.asarray(embeddings, dtype=np.float64)
    centroid = vectors.mean(axis=0)
    if metric == DistanceMetric.COSINE:
        norm = np.linalg.norm(centroid)
        if norm > 0:
            centroid = centroid / norm
        distances = np.clip(cosine_distances(vectors, centroid.reshape(1, -1))[:, 0], 0.0, 2.0)
    else:
        distances = euclidean_distances(vectors, centroid.reshape(1, -1))[:, 0]
    return centroid.tolist(), float(distances.mean())


def create_cluster_mapping(partition: Partition) -> Dict[str, List[str]]:
    """
    Map each fragment id to its cluster label.

    Clusters are labelled "cluster-<ordinal>" (1-based); unclustered
    fragments map to "noise". Values are lists to allow multi-membership.
    """
    mapping: Dict[str, List[str]] = {}
    for ordinal, members in enumerate(partition.clusters, start=1):
        for fragment_id in members:
            mapping[fragment_id] = [f"cluster-{ordinal}"]
    for fragment_id in partition.unclustered:
        mapping[fragment_id] = ["noise"]
    return mapping
