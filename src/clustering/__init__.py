"""
Fragment clustering for the knowledge base.

Groups unowned fragments by embedding similarity and hands each cluster to
a synthesizer that consolidates it into knowledge units.

Entry points:
1. ClusteringSessionManager (src.clustering.session): session lifecycle
2. VectorIndex.find_similar: standalone nearest-fragment search
3. python -m src.clustering: command line runs
"""

from .clusterer import SemanticClusterer
from .config import ClusteringConfig
from .vector_index import ScopeFilter, VectorIndex

__all__ = ['ClusteringConfig', 'ScopeFilter', 'SemanticClusterer', 'VectorIndex']
