"""
Pairwise distance matrix over a clustering working set.

Built once per clustering run; linkage evaluations only ever read from it.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Sequence

import numpy as np
from sklearn.metrics import pairwise_distances

from .models import DistanceMetric, Fragment

logger = logging.getLogger(__name__)


@dataclass
class DistanceMatrix:
    """
    Symmetric n x n distance table with a zero diagonal.

    Attributes:
        ids: Fragment ids, row/column order of the table
        values: Distances, shape (n, n)
        metric: Metric the table was computed with
        embeddings: Stacked embeddings in the same order (used by K-Means and metrics)
    """
    ids: List[str]
    values: np.ndarray
    metric: DistanceMetric
    embeddings: np.ndarray

    @classmethod
    def build(cls, fragments: Sequence[Fragment], metric: DistanceMetric) -> "DistanceMatrix":
        """
        Compute the pairwise distance table for a set of fragments.

        Args:
            fragments: Working set (every fragment must have an embedding)
            metric: Cosine or Euclidean

        Returns:
            DistanceMatrix in input order

        Raises:
            ValueError: If a fragment has no embedding or dimensions differ
        """
        metric = DistanceMetric(metric)
        missing = [f.id for f in fragments if not f.has_embedding]
        if missing:
            raise ValueError(f"Fragments without embeddings cannot be clustered: {missing[:5]}")

        ids = [f.id for f in fragments]
        if not fragments:
            return cls(ids=[], values=np.zeros((0, 0)), metric=metric, embeddings=np.zeros((0, 0)))

        dimensions = {f.embedding.size for f in fragments}
        if len(dimensions) > 1:
            raise ValueError(f"Embedding dimensions differ within working set: {sorted(dimensions)}")

        embeddings = np.vstack([f.embedding for f in fragments]).astype(np.float64)

        logger.info(f"Computing {metric.value} distance matrix for {len(ids)} fragments...")
        values = pairwise_distances(embeddings, metric=metric.value)

        # Exact symmetry and zero self-distance regardless of float noise
        values = (values + values.T) / 2.0
        np.fill_diagonal(values, 0.0)
        if metric == DistanceMetric.COSINE:
            values = np.clip(values, 0.0, 2.0)

        return cls(ids=ids, values=values, metric=metric, embeddings=embeddings)

    def __len__(self) -> int:
        return len(self.ids)

    @property
    def index_of(self) -> Dict[str, int]:
        return {fid: i for i, fid in enumerate(self.ids)}

    def distance(self, i: int, j: int) -> float:
        return float(self.values[i, j])

    def subset(self, indices: Sequence[int]) -> "DistanceMatrix":
        """Sub-matrix restricted to the given row indices (no recomputation)."""
        idx = np.asarray(indices, dtype=int)
        return DistanceMatrix(
            ids=[self.ids[i] for i in idx],
            values=self.values[np.ix_(idx, idx)],
            metric=self.metric,
            embeddings=self.embeddings[idx] if self.embeddings.size else self.embeddings,
        )
