"""
Command line entry point for clustering sessions.

Usage:
    python3 -m src.clustering run [--algorithm kmeans] [--threshold 0.25] [--scope tenant=acme] [--dry-run]
    python3 -m src.clustering status <session_id>
    python3 -m src.clustering abandon <session_id> [--min-running-seconds 3600] [--reason "..."]

Settings not given on the command line come from CLUSTERING_* environment
variables (see src.clustering.config).

Environment Variables:
    GCP_PROJECT: Google Cloud project ID
    FIRESTORE_FRAGMENTS_COLLECTION: Fragment collection (default: kx_fragments)
    LLM_MODEL: Synthesis model (default: gemini-2.5-flash)
    GOOGLE_APPLICATION_CREDENTIALS: Path to service account key
"""

import argparse
import json
import logging
import os
import sys
import time
from dataclasses import replace
from typing import Dict, List, Optional

from src.clustering.clusterer import SemanticClusterer
from src.clustering.config import ClusteringConfig
from src.clustering.exceptions import ClusteringError, SessionStateError
from src.clustering.session import ABANDONED_REASON, ClusteringSessionManager
from src.clustering.vector_index import ScopeFilter

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def parse_scope(pairs: Optional[List[str]]) -> Dict[str, str]:
    """Turn ["tenant=acme", "source=zendesk"] into a dict."""
    scope = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise argparse.ArgumentTypeError(f"Scope must be key=value, got {pair!r}")
        scope[key.strip()] = value.strip()
    return scope


def build_config(args: argparse.Namespace) -> ClusteringConfig:
    config = ClusteringConfig.from_env()
    overrides = {
        "algorithm": args.algorithm,
        "linkage": args.linkage,
        "metric": args.metric,
        "distance_threshold": args.threshold,
        "n_clusters": args.n_clusters,
        "eps": args.eps,
        "min_points": args.min_points,
    }
    config = replace(config, **{k: v for k, v in overrides.items() if v is not None})
    scope = parse_scope(args.scope)
    if scope:
        config.scope = scope
    return config


def dry_run(store, config: ClusteringConfig) -> None:
    """Partition the current unowned pool and report, without claiming or writing."""
    config.validate()
    scope = ScopeFilter(fields=dict(config.scope)) if config.scope else None
    fragments = store.list_unowned(scope)
    logger.warning("⚠️  DRY RUN MODE - No claims or writes will be performed")

    if not fragments:
        logger.info("No unowned fragments with embeddings in scope")
        return

    start_time = time.time()
    partition = SemanticClusterer(config).cluster(fragments)
    elapsed = time.time() - start_time

    logger.info("=" * 60)
    logger.info("DRY RUN SUMMARY")
    logger.info("=" * 60)
    logger.info(f"Partition time: {elapsed:.2f} seconds")
    logger.info(f"Fragments: {len(fragments)}")
    logger.info(f"Clusters found: {partition.n_clusters}")
    logger.info(f"Unclustered: {len(partition.unclustered)}")
    logger.info(f"Quality metrics: {partition.quality_metrics}")
    logger.info("=" * 60)


def main():
    """Main entry point for clustering sessions."""
    parser = argparse.ArgumentParser(description='Fragment clustering and knowledge unit synthesis')
    subparsers = parser.add_subparsers(dest='command', required=True)

    run_parser = subparsers.add_parser('run', help='Create and run one clustering session')
    run_parser.add_argument('--algorithm', choices=['hierarchical_agglomerative', 'kmeans', 'dbscan'])
    run_parser.add_argument('--linkage', choices=['ward', 'single', 'complete', 'average'])
    run_parser.add_argument('--metric', choices=['cosine', 'euclidean'])
    run_parser.add_argument('--threshold', type=float, help='HAC distance threshold')
    run_parser.add_argument('--n-clusters', type=int, help='HAC target count or K-Means k')
    run_parser.add_argument('--eps', type=float, help='DBSCAN neighborhood radius')
    run_parser.add_argument('--min-points', type=int, help='DBSCAN minimum neighborhood size')
    run_parser.add_argument('--scope', nargs='*', metavar='KEY=VALUE', help='Restrict to matching fragments')
    run_parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Partition and report without claiming, writing or calling the LLM'
    )

    status_parser = subparsers.add_parser('status', help='Show a session status')
    status_parser.add_argument('session_id')

    abandon_parser = subparsers.add_parser('abandon', help='Fail a stuck running session and release its claims')
    abandon_parser.add_argument('session_id')
    abandon_parser.add_argument('--reason', default=ABANDONED_REASON)
    abandon_parser.add_argument(
        '--min-running-seconds',
        type=float,
        help='Only abandon sessions running at least this long'
    )

    args = parser.parse_args()

    if not os.getenv('GCP_PROJECT'):
        logger.error("GCP_PROJECT environment variable not set")
        sys.exit(1)

    from src.store.firestore_store import FirestoreFragmentStore
    store = FirestoreFragmentStore()

    if args.command == 'status':
        try:
            print(json.dumps(ClusteringSessionManager(store).get_session_status(args.session_id), indent=2))
        except KeyError:
            logger.error(f"Unknown session: {args.session_id}")
            sys.exit(1)
        return

    if args.command == 'abandon':
        try:
            session = ClusteringSessionManager(store).abandon_session(
                args.session_id, reason=args.reason, min_running_seconds=args.min_running_seconds
            )
        except KeyError:
            logger.error(f"Unknown session: {args.session_id}")
            sys.exit(1)
        except SessionStateError as e:
            logger.error(e.message)
            sys.exit(1)
        print(json.dumps(session.status_report(), indent=2))
        return

    manager = ClusteringSessionManager(store)
    try:
        config = build_config(args)
        if args.dry_run:
            dry_run(store, config)
            return
        session = manager.start_session(config)
        session = manager.run_session(session.id)
        print(json.dumps(session.status_report(), indent=2))
        if session.status.value != 'completed':
            sys.exit(2)
    except ClusteringError as e:
        logger.error(f"Clustering session failed: {e.message} (session={e.session_id})")
        sys.exit(1)
    finally:
        manager.close()


if __name__ == '__main__':
    main()
