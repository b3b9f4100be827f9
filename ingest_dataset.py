"""
Ingest the Barcenas Mexican legal Q&A dataset into the assistant's corpus.

Downloads the dataset from Hugging Face, normalizes each question/answer pair,
embeds it with the configured embedding provider and stores it in PostgreSQL
(or the in-memory store when no database is configured).

Usage:
    python ingest_dataset.py
    python ingest_dataset.py --limit 500 --batch-size 25
    python ingest_dataset.py --overwrite
    python ingest_dataset.py --estimate
"""

import sys
import argparse
import logging
from pathlib import Path
from dotenv import load_dotenv

# Ensure project root is on path
PROJECT_ROOT = Path(__file__).resolve().parent
sys.path.insert(0, str(PROJECT_ROOT))
load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)

from execution.legal_assistant.config import AssistantConfig  # noqa: E402
from execution.legal_assistant.ingestion import IngestionConfig, IngestionService  # noqa: E402
from execution.legal_assistant.providers import ProviderSelector  # noqa: E402
from execution.legal_assistant.vector_store import get_vector_store  # noqa: E402


def build_parser() -> argparse.ArgumentParser:
    arg_parser = argparse.ArgumentParser(description="Ingest the Barcenas legal dataset")
    arg_parser.add_argument("--limit", type=int, default=None, help="Only ingest the first N entries")
    arg_parser.add_argument("--batch-size", type=int, default=50, help="Documents per embedding batch")
    arg_parser.add_argument("--max-chunk-size", type=int, default=1000, help="Characters embedded per document")
    arg_parser.add_argument("--chunk-overlap", type=int, default=100, help="Overlap between chunks")
    arg_parser.add_argument("--overwrite", action="store_true", help="Delete the existing dataset documents first")
    arg_parser.add_argument("--no-skip-existing", action="store_true", help="Re-embed documents already stored")
    arg_parser.add_argument("--estimate", action="store_true", help="Print a cost estimate and exit")
    arg_parser.add_argument("--validate", action="store_true", help="Validate the dataset and exit")
    arg_parser.add_argument(
        "--create-index", choices=["ivfflat", "hnsw"], default=None,
        help="Build the vector index after ingesting",
    )
    return arg_parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    config = AssistantConfig.from_env()
    providers = ProviderSelector.from_config(config)
    store = get_vector_store(config.store)
    store.initialize_schema()

    service = IngestionService(providers.embedding(), store)

    if args.estimate:
        estimate = service.estimate(limit=args.limit)
        print(estimate.breakdown)
        print(f"Estimated time: ~{estimate.estimated_minutes} min")
        print(f"Estimated cost: ${estimate.estimated_cost_usd:.4f}")
        return 0

    if args.validate:
        validation = service.validate_dataset()
        print(f"Valid: {validation.valid} ({validation.total_entries} entries)")
        for message in validation.errors + validation.warnings:
            print(f"  - {message}")
        return 0 if validation.valid else 1

    result = service.ingest(IngestionConfig(
        batch_size=args.batch_size,
        max_chunk_size=args.max_chunk_size,
        chunk_overlap=args.chunk_overlap,
        skip_existing=not args.no_skip_existing,
        overwrite=args.overwrite,
        limit=args.limit,
    ))
    if args.create_index and result.success:
        store.create_vector_index(args.create_index)
    store.close()

    logger.info("=" * 60)
    logger.info(f"Success:   {result.success}")
    logger.info(f"Total:     {result.total}")
    logger.info(f"Processed: {result.processed}")
    logger.info(f"Skipped:   {result.skipped}")
    logger.info(f"Failed:    {result.failed}")
    logger.info(f"Truncated: {result.truncated}")
    logger.info(f"Duration:  {result.duration_seconds:.1f}s")
    if result.error:
        logger.error(f"Error: {result.error}")
    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
