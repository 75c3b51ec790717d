"""
Clustering session configuration.

Configuration is a plain dataclass with defaults, loadable from environment
variables and round-trippable through dictionaries so it can be stored on the
session record.

Environment Variables:
    CLUSTERING_ALGORITHM: hierarchical_agglomerative | kmeans | dbscan
    CLUSTERING_LINKAGE: ward | single | complete | average
    CLUSTERING_METRIC: cosine | euclidean
    CLUSTERING_DISTANCE_THRESHOLD: HAC stop threshold (default: 0.3)
    CLUSTERING_N_CLUSTERS: target cluster count (HAC) or k (K-Means)
    CLUSTERING_EPS: DBSCAN neighborhood radius (default: 0.25)
    CLUSTERING_MIN_POINTS: DBSCAN core point threshold (default: 2)
    CLUSTERING_MIN_CLUSTER_SIZE: smallest cluster kept (default: 2)
    CLUSTERING_MAX_CLUSTER_SIZE: largest cluster kept (default: unbounded)
"""

import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional

from .exceptions import ConfigurationError
from .models import ClusteringAlgorithmType, DistanceMetric, LinkageType

logger = logging.getLogger(__name__)

DEFAULT_DISTANCE_THRESHOLD = 0.3
DEFAULT_EPS = 0.25
DEFAULT_MAX_ITERATIONS = 100
DEFAULT_RANDOM_STATE = 42

# K-means bucketing ahead of HAC (keeps the O(n^2) merge loop per bucket small)
TARGET_BUCKET_SIZE = 50
MAX_BUCKET_SIZE = 100

# A knowledge unit consolidates at least two fragments
MIN_FRAGMENTS_PER_UNIT = 2


def _parse_enum(enum_cls, value, name: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        raise ConfigurationError(
            f"Invalid {name}: {value!r}. Choose one of {[e.value for e in enum_cls]}"
        ) from None


def _optional_number(raw: Optional[str], cast, default=None):
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ConfigurationError(f"Invalid numeric setting: {raw!r}") from None


@dataclass
class ClusteringConfig:
    """
    Parameters of one clustering session.

    Args:
        algorithm: Clustering algorithm
        linkage: Merge-cost rule (hierarchical agglomerative only)
        metric: Distance metric for the pairwise matrix
        distance_threshold: HAC stops when the next merge cost exceeds this
        n_clusters: HAC target cluster count, or k for K-Means (None = sqrt(n))
        eps: DBSCAN maximum neighbor distance
        min_points: DBSCAN minimum neighborhood size (the point itself counts)
        min_cluster_size: Smaller clusters are demoted to unclustered
        max_cluster_size: Larger clusters are demoted to unclustered (None = no limit)
        max_iterations: K-Means iteration cap
        random_state: Seed for K-Means initialization
        max_bucket_size: HAC working sets above this are pre-split with K-Means
        target_bucket_size: Approximate bucket size produced by the pre-split
        scope: Field-equality constraints selecting the fragments a session claims
    """
    algorithm: ClusteringAlgorithmType = ClusteringAlgorithmType.HIERARCHICAL_AGGLOMERATIVE
    linkage: LinkageType = LinkageType.AVERAGE
    metric: DistanceMetric = DistanceMetric.COSINE
    distance_threshold: Optional[float] = DEFAULT_DISTANCE_THRESHOLD
    n_clusters: Optional[int] = None
    eps: float = DEFAULT_EPS
    min_points: int = 2
    min_cluster_size: int = MIN_FRAGMENTS_PER_UNIT
    max_cluster_size: Optional[int] = None
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    random_state: int = DEFAULT_RANDOM_STATE
    max_bucket_size: int = MAX_BUCKET_SIZE
    target_bucket_size: int = TARGET_BUCKET_SIZE
    scope: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.algorithm = _parse_enum(ClusteringAlgorithmType, self.algorithm, "algorithm")
        self.linkage = _parse_enum(LinkageType, self.linkage, "linkage")
        self.metric = _parse_enum(DistanceMetric, self.metric, "distance metric")

    def validate(self) -> "ClusteringConfig":
        """
        Check parameter combinations.

        Returns:
            self, for chaining

        Raises:
            ConfigurationError: If the configuration cannot produce a valid run
        """
        is_hac = self.algorithm == ClusteringAlgorithmType.HIERARCHICAL_AGGLOMERATIVE

        if is_hac and self.linkage == LinkageType.WARD and self.metric != DistanceMetric.EUCLIDEAN:
            raise ConfigurationError(
                f"Ward linkage requires the euclidean metric, got {self.metric.value}"
            )
        if is_hac and self.distance_threshold is None and self.n_clusters is None:
            raise ConfigurationError(
                "Hierarchical clustering needs a distance_threshold or n_clusters stop criterion"
            )
        if self.distance_threshold is not None and self.distance_threshold < 0:
            raise ConfigurationError(f"distance_threshold must be >= 0, got {self.distance_threshold}")
        if self.n_clusters is not None and self.n_clusters < 1:
            raise ConfigurationError(f"n_clusters must be >= 1, got {self.n_clusters}")
        if self.eps <= 0:
            raise ConfigurationError(f"eps must be > 0, got {self.eps}")
        if self.min_points < 1:
            raise ConfigurationError(f"min_points must be >= 1, got {self.min_points}")
        if self.min_cluster_size < MIN_FRAGMENTS_PER_UNIT:
            raise ConfigurationError(
                f"min_cluster_size must be >= {MIN_FRAGMENTS_PER_UNIT}, got {self.min_cluster_size}"
            )
        if self.max_cluster_size is not None and self.max_cluster_size < self.min_cluster_size:
            raise ConfigurationError(
                f"max_cluster_size ({self.max_cluster_size}) is below "
                f"min_cluster_size ({self.min_cluster_size})"
            )
        if self.max_iterations < 1:
            raise ConfigurationError(f"max_iterations must be >= 1, got {self.max_iterations}")
        if not 1 <= self.target_bucket_size < self.max_bucket_size:
            raise ConfigurationError(
                f"target_bucket_size ({self.target_bucket_size}) must be between 1 and "
                f"max_bucket_size ({self.max_bucket_size})"
            )
        return self

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["algorithm"] = self.algorithm.value
        data["linkage"] = self.linkage.value
        data["metric"] = self.metric.value
        data["scope"] = dict(self.scope)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClusteringConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {sorted(unknown)}")
        return cls(**data)

    @classmethod
    def from_env(cls) -> "ClusteringConfig":
        """Build a configuration from CLUSTERING_* environment variables."""
        config = cls(
            algorithm=os.environ.get("CLUSTERING_ALGORITHM", ClusteringAlgorithmType.HIERARCHICAL_AGGLOMERATIVE.value),
            linkage=os.environ.get("CLUSTERING_LINKAGE", LinkageType.AVERAGE.value),
            metric=os.environ.get("CLUSTERING_METRIC", DistanceMetric.COSINE.value),
            distance_threshold=_optional_number(
                os.environ.get("CLUSTERING_DISTANCE_THRESHOLD"), float, DEFAULT_DISTANCE_THRESHOLD
            ),
            n_clusters=_optional_number(os.environ.get("CLUSTERING_N_CLUSTERS"), int),
            eps=_optional_number(os.environ.get("CLUSTERING_EPS"), float, DEFAULT_EPS),
            min_points=_optional_number(os.environ.get("CLUSTERING_MIN_POINTS"), int, 2),
            min_cluster_size=_optional_number(
                os.environ.get("CLUSTERING_MIN_CLUSTER_SIZE"), int, MIN_FRAGMENTS_PER_UNIT
            ),
            max_cluster_size=_optional_number(os.environ.get("CLUSTERING_MAX_CLUSTER_SIZE"), int),
        )
        logger.info(
            f"Loaded clustering config from environment: algorithm={config.algorithm.value}, "
            f"linkage={config.linkage.value}, metric={config.metric.value}"
        )
        return config
