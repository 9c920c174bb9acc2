"""
Rebuild or reconcile the RAG vector index from the CRM store.

Usage:
    python scripts/reindex.py index-all
    python scripts/reindex.py reconcile --window-hours 24
    python scripts/reindex.py entity deal <deal_id>

Intended for cron-style scheduling: ``index-all`` after a restore or an
embedding model change, ``reconcile`` periodically to repair missed
targeted re-indexes.
"""
import argparse
import asyncio
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from crm_ai.core.config import get_settings
from crm_ai.core.logging import configure_logging, get_logger
from crm_ai.services.rag.indexing import EntityType, get_indexing_pipeline

logger = get_logger(__name__)


async def run(args: argparse.Namespace) -> int:
    pipeline = get_indexing_pipeline()

    if args.command == "entity":
        action = await pipeline.handle_data_update(args.entity_type, args.entity_id)
        if action is None:
            logger.error("reindex_entity_failed", entity_type=args.entity_type, entity_id=args.entity_id)
            return 1
        pipeline.vector_store.persist()
        logger.info("reindex_entity_done", entity_type=args.entity_type, entity_id=args.entity_id, action=action.value)
        return 0

    if args.command == "index-all":
        report = await pipeline.index_all()
    else:
        report = await pipeline.reconcile(window_hours=args.window_hours)

    for name, collection in report.collections.items():
        logger.info(
            "reindex_collection_summary",
            collection=name,
            indexed=collection.indexed,
            removed=collection.removed,
            failed=collection.failed,
        )
    stats = await pipeline.vector_store.stats()
    logger.info("reindex_done", mode=report.mode, duration_ms=report.duration_ms, stats=stats)
    return 0 if report.total_failed == 0 or not args.strict else 2


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Maintain the RAG vector index")
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Exit with status 2 when any record failed to index",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("index-all", help="Index every qualifying deal, objection and interaction")

    reconcile = subparsers.add_parser("reconcile", help="Re-apply indexing to recently changed entities")
    reconcile.add_argument(
        "--window-hours",
        type=int,
        default=None,
        help="Trailing window in hours (default: RAG_RECONCILE_WINDOW_HOURS)",
    )

    entity = subparsers.add_parser("entity", help="Re-index a single entity")
    entity.add_argument("entity_type", choices=[t.value for t in EntityType])
    entity.add_argument("entity_id")

    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(log_level=settings.log_level, service_name="crm-ai-reindex", json_output=settings.log_json)

    try:
        return asyncio.run(run(args))
    except Exception as e:
        logger.error("reindex_failed", command=args.command, error=str(e), error_type=type(e).__name__)
        return 1


if __name__ == "__main__":
    sys.exit(main())
