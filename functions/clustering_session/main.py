"""
Cloud Function for scheduled clustering sessions.

Called by Cloud Scheduler / Cloud Workflows. Either runs a session that was
created earlier, or creates one from a configuration and runs it.

Function URL:
    POST https://europe-west4-{project}.cloudfunctions.net/clustering-session

Request payload (one of):
    {"session_id": "3f2a..."}
    {"config": {"algorithm": "dbscan", "eps": 0.2, "scope": {"tenant": "acme"}}}
    {"action": "abandon", "session_id": "3f2a...", "min_running_seconds": 3600}

The abandon action fails a session stuck in Running and releases its
fragments, so the next scheduled session can claim them.

Response:
    {
        "session_id": "3f2a...",
        "status": "completed",
        "clusters_found": 4,
        "units_created": 6,
        "fragment_count": 120,
        "processing_time_sec": 45.3
    }
"""

import logging
import time
from typing import Optional

import functions_framework
from flask import Request

from src.clustering.exceptions import ClusteringError, ConfigurationError, SessionStateError
from src.clustering.session import ClusteringSessionManager

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Reused across warm invocations
_manager: Optional[ClusteringSessionManager] = None


def get_manager() -> ClusteringSessionManager:
    global _manager
    if _manager is None:
        from src.store.firestore_store import FirestoreFragmentStore
        _manager = ClusteringSessionManager(FirestoreFragmentStore())
    return _manager


@functions_framework.http
def run_clustering_session(request: Request):
    """
    Cloud Function HTTP handler for clustering sessions.

    Args:
        request: Flask request with JSON payload

    Returns:
        Session status JSON and HTTP status code
    """
    start_time = time.time()

    request_json = request.get_json(silent=True)
    if not request_json:
        return {'error': 'Request body must be JSON'}, 400

    session_id = request_json.get('session_id')
    config = request_json.get('config')
    action = request_json.get('action', 'run')
    if action not in ('run', 'abandon'):
        return {'error': f'Unknown action: {action}'}, 400
    if action == 'abandon':
        if not session_id:
            return {'error': 'session_id is required to abandon a session'}, 400
        return abandon_session(get_manager(), session_id, request_json)

    if not session_id and config is None:
        return {'error': 'session_id or config is required'}, 400

    manager = get_manager()

    try:
        if not session_id:
            session_id = manager.start_session(config).id
            logger.info(f"Created session {session_id} from request config")
        manager.run_session(session_id)

    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e.message}")
        return {'error': e.message, 'session_id': e.session_id}, 400
    except KeyError:
        return {'error': f'Unknown session: {session_id}', 'session_id': session_id}, 404
    except SessionStateError as e:
        return {'error': e.message, 'session_id': session_id}, 409
    except ClusteringError as e:
        logger.error(f"Session {session_id} failed: {e.message}")
        report = manager.get_session_status(session_id)
        report['processing_time_sec'] = round(time.time() - start_time, 2)
        return report, 500
    except Exception as e:
        logger.error(f"Clustering session failed: {e}", exc_info=True)
        return {'error': str(e), 'session_id': session_id}, 500

    report = manager.get_session_status(session_id)
    report['processing_time_sec'] = round(time.time() - start_time, 2)
    logger.info(f"Session {session_id} finished as {report['status']} in {report['processing_time_sec']}s")
    return report, 200


def abandon_session(manager: ClusteringSessionManager, session_id: str, request_json: dict):
    """Fail a stuck Running session and release its claims."""
    kwargs = {}
    if request_json.get('reason'):
        kwargs['reason'] = request_json['reason']
    if request_json.get('min_running_seconds') is not None:
        kwargs['min_running_seconds'] = float(request_json['min_running_seconds'])

    try:
        manager.abandon_session(session_id, **kwargs)
    except KeyError:
        return {'error': f'Unknown session: {session_id}', 'session_id': session_id}, 404
    except SessionStateError as e:
        return {'error': e.message, 'session_id': session_id}, 409

    logger.info(f"Abandoned session {session_id}")
    return manager.get_session_status(session_id), 200
