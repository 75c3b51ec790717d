"""
Data model for fragment clustering.

Defines fragments, clusters, knowledge units and clustering sessions, plus
the enums used to configure a clustering run. Records convert to and from
plain dictionaries for storage (Firestore documents or in-memory copies).
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import numpy as np


def _utc_now() -> datetime:
    """Return current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Generate a new record identifier."""
    return uuid.uuid4().hex


class ClusteringAlgorithmType(str, Enum):
    """Supported clustering algorithms."""
    HIERARCHICAL_AGGLOMERATIVE = "hierarchical_agglomerative"
    KMEANS = "kmeans"
    DBSCAN = "dbscan"


class LinkageType(str, Enum):
    """Merge-cost rules for hierarchical agglomerative clustering."""
    WARD = "ward"
    SINGLE = "single"
    COMPLETE = "complete"
    AVERAGE = "average"


class DistanceMetric(str, Enum):
    """Distance metrics for the pairwise distance matrix."""
    COSINE = "cosine"
    EUCLIDEAN = "euclidean"


class SessionStatus(str, Enum):
    """Clustering session lifecycle states."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED)


class ConfidenceLevel(str, Enum):
    """Confidence assigned by the synthesizer to a knowledge unit."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def parse(cls, value: Any) -> "ConfidenceLevel":
        """Parse a confidence value case-insensitively ("High", "low", ...)."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError(f"Confidence must be a string, got {type(value)}")
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(
                f"Invalid confidence level: {value!r}. "
                f"Expected one of {[c.value for c in cls]}"
            ) from None


@dataclass
class Fragment:
    """
    Atomic unit of extracted knowledge.

    Attributes:
        id: Fragment identifier
        content: Free-text content
        embedding: Dense embedding vector (None = invisible to search/clustering)
        category: Knowledge category name
        title: Short heading
        summary: Optional short summary
        metadata: Scope fields (tenant, source, ...) and source details
        knowledge_unit_id: Owning knowledge unit (None = available)
        claimed_by: Session currently holding a claim on the fragment
    """
    id: str
    content: str
    embedding: Optional[np.ndarray] = None
    category: Optional[str] = None
    title: str = ""
    summary: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    knowledge_unit_id: Optional[str] = None
    claimed_by: Optional[str] = None
    created_at: datetime = field(default_factory=_utc_now)

    def __post_init__(self):
        if self.embedding is not None and not isinstance(self.embedding, np.ndarray):
            self.embedding = np.asarray(self.embedding, dtype=np.float64)

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None and self.embedding.size > 0

    @property
    def is_owned(self) -> bool:
        return self.knowledge_unit_id is not None

    @property
    def is_available(self) -> bool:
        """True when the fragment is neither owned nor claimed."""
        return self.knowledge_unit_id is None and self.claimed_by is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "embedding": self.embedding.tolist() if self.embedding is not None else None,
            "category": self.category,
            "title": self.title,
            "summary": self.summary,
            "metadata": dict(self.metadata),
            "knowledge_unit_id": self.knowledge_unit_id,
            "claimed_by": self.claimed_by,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Fragment":
        embedding = data.get("embedding")
        return cls(
            id=data["id"],
            content=data.get("content", ""),
            embedding=np.asarray(embedding, dtype=np.float64) if embedding is not None else None,
            category=data.get("category"),
            title=data.get("title", ""),
            summary=data.get("summary"),
            metadata=dict(data.get("metadata") or {}),
            knowledge_unit_id=data.get("knowledge_unit_id"),
            claimed_by=data.get("claimed_by"),
            created_at=data.get("created_at") or _utc_now(),
        )


@dataclass
class Cluster:
    """Structural grouping of fragment ids produced by one session, before synthesis."""
    session_id: str
    ordinal: int
    fragment_ids: List[str]
    id: str = field(default_factory=new_id)
    centroid: Optional[List[float]] = None
    intra_cluster_distance: Optional[float] = None
    created_at: datetime = field(default_factory=_utc_now)

    @property
    def size(self) -> int:
        return len(self.fragment_ids)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "ordinal": self.ordinal,
            "fragment_ids": list(self.fragment_ids),
            "fragment_count": len(self.fragment_ids),
            "centroid": self.centroid,
            "intra_cluster_distance": self.intra_cluster_distance,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Cluster":
        return cls(
            id=data["id"],
            session_id=data["session_id"],
            ordinal=data["ordinal"],
            fragment_ids=list(data.get("fragment_ids", [])),
            centroid=data.get("centroid"),
            intra_cluster_distance=data.get("intra_cluster_distance"),
            created_at=data.get("created_at") or _utc_now(),
        )


@dataclass
class KnowledgeUnit:
    """
    Synthesized consolidation of two or more fragments.

    The member set is fixed at creation; corrections create a new unit.
    """
    title: str
    summary: str
    category: str
    content: str
    confidence: ConfidenceLevel
    fragment_ids: List[str]
    id: str = field(default_factory=new_id)
    confidence_comment: Optional[str] = None
    clustering_rationale: Optional[str] = None
    cluster_id: Optional[str] = None
    session_id: Optional[str] = None
    embedding: Optional[List[float]] = None
    created_at: datetime = field(default_factory=_utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "summary": self.summary,
            "category": self.category,
            "content": self.content,
            "confidence": self.confidence.value,
            "confidence_comment": self.confidence_comment,
            "clustering_rationale": self.clustering_rationale,
            "fragment_ids": list(self.fragment_ids),
            "cluster_id": self.cluster_id,
            "session_id": self.session_id,
            "embedding": self.embedding,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KnowledgeUnit":
        return cls(
            id=data["id"],
            title=data["title"],
            summary=data["summary"],
            category=data["category"],
            content=data["content"],
            confidence=ConfidenceLevel.parse(data["confidence"]),
            fragment_ids=list(data.get("fragment_ids", [])),
            confidence_comment=data.get("confidence_comment"),
            clustering_rationale=data.get("clustering_rationale"),
            cluster_id=data.get("cluster_id"),
            session_id=data.get("session_id"),
            embedding=data.get("embedding"),
            created_at=data.get("created_at") or _utc_now(),
        )


@dataclass
class Partition:
    """
    Algorithm output: clusters of fragment ids plus the unclustered remainder.

    Clusters are ordered by the input position of their first member, so
    ordinal numbering is reproducible for identical input.
    """
    clusters: List[List[str]]
    unclustered: List[str] = field(default_factory=list)
    quality_metrics: Dict[str, Any] = field(default_factory=dict)

    @property
    def n_clusters(self) -> int:
        return len(self.clusters)

    @property
    def clustered_ids(self) -> List[str]:
        return [fid for members in self.clusters for fid in members]


@dataclass
class ClusteringSession:
    """
    One clustering run.

    Status moves Pending -> Running -> {Completed, Failed}; a Running session
    holds the claim on its working set until it reaches a terminal state.
    """
    config: Dict[str, Any]
    id: str = field(default_factory=new_id)
    status: SessionStatus = SessionStatus.PENDING
    error: Optional[str] = None
    fragment_count: int = 0
    clusters_found: int = 0
    units_created: int = 0
    created_at: datetime = field(default_factory=_utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "config": dict(self.config),
            "status": self.status.value,
            "error": self.error,
            "fragment_count": self.fragment_count,
            "clusters_found": self.clusters_found,
            "units_created": self.units_created,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClusteringSession":
        return cls(
            id=data["id"],
            config=dict(data.get("config") or {}),
            status=SessionStatus(data.get("status", SessionStatus.PENDING.value)),
            error=data.get("error"),
            fragment_count=data.get("fragment_count", 0),
            clusters_found=data.get("clusters_found", 0),
            units_created=data.get("units_created", 0),
            created_at=data.get("created_at") or _utc_now(),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
        )

    def status_report(self) -> Dict[str, Any]:
        """Caller-facing status summary."""
        report = {
            "session_id": self.id,
            "status": self.status.value,
            "clusters_found": self.clusters_found,
            "units_created": self.units_created,
            "fragment_count": self.fragment_count,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
        if self.error:
            report["error"] = self.error
        return report
