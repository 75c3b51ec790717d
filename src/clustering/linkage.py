"""
Linkage strategies for hierarchical agglomerative clustering.

Each strategy computes the merge cost between two member sets from the
precomputed distance matrix: f(matrix, members_a, members_b) -> float.
Members are row indices into the matrix.
"""

from typing import Callable, Dict, Sequence

import numpy as np

from .distance_matrix import DistanceMatrix
from .models import LinkageType

LinkageFunction = Callable[[DistanceMatrix, Sequence[int], Sequence[int]], float]


def _block(matrix: DistanceMatrix, members_a: Sequence[int], members_b: Sequence[int]) -> np.ndarray:
    return matrix.values[np.ix_(list(members_a), list(members_b))]


def single_linkage(matrix: DistanceMatrix, members_a: Sequence[int], members_b: Sequence[int]) -> float:
    """Minimum pairwise distance."""
    return float(_block(matrix, members_a, members_b).min())


def complete_linkage(matrix: DistanceMatrix, members_a: Sequence[int], members_b: Sequence[int]) -> float:
    """Maximum pairwise distance."""
    return float(_block(matrix, members_a, members_b).max())


def average_linkage(matrix: DistanceMatrix, members_a: Sequence[int], members_b: Sequence[int]) -> float:
    """Unweighted mean pairwise distance (UPGMA)."""
    return float(_block(matrix, members_a, members_b).mean())


def ward_linkage(matrix: DistanceMatrix, members_a: Sequence[int], members_b: Sequence[int]) -> float:
    """
    Ward merge cost from Euclidean pairwise distances.

    The increase in within-cluster sum of squares when A and B merge is
    |A||B| / (|A| + |B|) * ||c_A - c_B||^2, and the squared centroid gap
    follows from squared distances alone:

        ||c_A - c_B||^2 = mean_{a,b} d(a,b)^2
                          - sum_{a,a'} d(a,a')^2 / (2|A|^2)
                          - sum_{b,b'} d(b,b')^2 / (2|B|^2)

    The returned cost is sqrt(2 * increase), which equals the plain distance
    when both sides are singletons, so one threshold scale serves every linkage.
    """
    n_a, n_b = len(members_a), len(members_b)
    cross = _block(matrix, members_a, members_b) ** 2
    within_a = _block(matrix, members_a, members_a) ** 2
    within_b = _block(matrix, members_b, members_b) ** 2

    centroid_gap = (
        cross.mean()
        - within_a.sum() / (2.0 * n_a * n_a)
        - within_b.sum() / (2.0 * n_b * n_b)
    )
    increase = (n_a * n_b) / (n_a + n_b) * max(centroid_gap, 0.0)
    return float(np.sqrt(2.0 * increase))


LINKAGES: Dict[LinkageType, LinkageFunction] = {
    LinkageType.SINGLE: single_linkage,
    LinkageType.COMPLETE: complete_linkage,
    LinkageType.AVERAGE: average_linkage,
    LinkageType.WARD: ward_linkage,
}


def get_linkage(linkage: LinkageType) -> LinkageFunction:
    """Look up the merge-cost function for a linkage type."""
    return LINKAGES[LinkageType(linkage)]
