"""
Command line entry point for batch matching jobs

Usage:
    inbox-matcher init-db
    inbox-matcher process <document-id>
    inbox-matcher rescore <tenant-id>
    inbox-matcher process-pending [--tenant T] [--limit N]
    inbox-matcher expire [--older-than-days N] [--tenant T]
    inbox-matcher calibrate <tenant-id>
"""

import argparse
import json
import logging
import sys
import uuid
from datetime import timedelta
from typing import List, Optional

from inbox_matcher.config_manager import ConfigurationError, configure_logging, get_config
from inbox_matcher.database.connection import DatabaseSettings, close_db, init_db
from inbox_matcher.database.matching_service import MatchingService
from inbox_matcher.database.models import utcnow
from inbox_matcher.database.repositories import RepositoryError
from inbox_matcher.embeddings import HttpEmbeddingProvider
from inbox_matcher.reconciliation import ReconciliationError
from inbox_matcher.security_logger import get_security_logger
from inbox_matcher.vector_index import DatabaseVectorIndex

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="inbox-matcher",
        description="Match inbox documents to ledger transactions"
    )
    parser.add_argument("--config", "-c", default=None, help="Path to config.yaml")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create all tables")

    p = sub.add_parser("process", help="Score one document")
    p.add_argument("document_id", type=uuid.UUID)

    p = sub.add_parser("rescore", help="Rescore every open document of a tenant")
    p.add_argument("tenant_id")

    p = sub.add_parser("process-pending", help="Score new documents and retry degraded runs")
    p.add_argument("--tenant", default=None)
    p.add_argument("--limit", type=int, default=None)

    p = sub.add_parser("expire", help="Expire stale pending suggestions")
    p.add_argument("--older-than-days", type=int, default=None)
    p.add_argument("--tenant", default=None)

    p = sub.add_parser("calibrate", help="Recalibrate a tenant's thresholds from feedback")
    p.add_argument("tenant_id")

    return parser


def _run(args, config, db) -> dict:
    if args.command == "init-db":
        db.create_tables()
        return {"tables": "created"}

    embedding_provider = HttpEmbeddingProvider.from_config(config) if config.embedding.enabled else None

    with db.session_scope() as session:
        service = MatchingService(
            session,
            config,
            index=DatabaseVectorIndex(db.session_factory),
            embedding_provider=embedding_provider,
            security_logger=get_security_logger(log_dir=config.logging.security_log_dir),
        )
        if args.command == "process":
            return service.process_document(args.document_id).to_dict()
        if args.command == "rescore":
            return service.rescore_all(args.tenant_id).to_dict()
        if args.command == "process-pending":
            return service.process_pending(args.tenant, args.limit).to_dict()
        if args.command == "expire":
            older_than = None
            if args.older_than_days is not None:
                older_than = utcnow() - timedelta(days=args.older_than_days)
            return {"expired": service.expire(older_than, tenant_id=args.tenant)}
        if args.command == "calibrate":
            return service.calibrate(args.tenant_id).to_dict()

    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = get_config(args.config)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    configure_logging(config)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        db = init_db(echo=config.database.echo, settings=DatabaseSettings.from_config(config))
        result = _run(args, config, db)
    except (ReconciliationError, RepositoryError) as e:
        logger.error(f"{args.command} failed: {e}")
        return 1
    finally:
        close_db()

    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
