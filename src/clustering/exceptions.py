"""
Exception hierarchy for clustering sessions and knowledge unit synthesis.

Argument errors elsewhere in the package raise plain ValueError; the classes
here mark the failure categories a session distinguishes between.
"""

from typing import Optional


class ClusteringError(Exception):
    """Base class for all clustering pipeline errors."""

    def __init__(self, message: str, session_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.session_id = session_id


class ConfigurationError(ClusteringError, ValueError):
    """Invalid session configuration, rejected before any fragment is claimed."""


class AlgorithmError(ClusteringError):
    """Numerical or degenerate-input failure inside a clustering algorithm."""


class SynthesisValidationError(ClusteringError, ValueError):
    """A single synthesized candidate failed validation. Never fatal to a session."""

    def __init__(self, message: str, cluster_id: Optional[str] = None):
        super().__init__(message)
        self.cluster_id = cluster_id


class ExternalSynthesizerError(ClusteringError):
    """The external synthesizer failed (timeout, server error, unparseable reply)."""


class SessionCancelledError(ClusteringError):
    """The caller's cancellation signal was observed while the session was running."""


class SessionStateError(ClusteringError):
    """An operation was attempted from a state that does not allow it."""
