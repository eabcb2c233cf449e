#!/usr/bin/env python3
"""
Backfill Review Embeddings
==========================

Computes embeddings for graded reviews that have none or a stale one.
Use --force after switching embedding models to recompute every vector.

Usage:
    python scripts/backfill_embeddings.py
    python scripts/backfill_embeddings.py --force
    python scripts/backfill_embeddings.py --since 2024-01-01 --limit 500
"""

import argparse
import asyncio
from datetime import datetime, timezone
from pathlib import Path

# Add src to path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.config import EmbeddingMode, settings
from src.infrastructure.database import close_database, create_tables, init_database
from src.infrastructure.llm import create_llm_client
from src.review.infrastructure.jobs import run_embedding_backfill
from src.shared.infrastructure.logging import setup_logging


def parse_date(value: str) -> datetime:
    """Parse YYYY-MM-DD (or full ISO) as a UTC timestamp."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Backfill embeddings for graded reviews")
    parser.add_argument("--force", action="store_true", help="Recompute every eligible embedding")
    parser.add_argument("--since", type=parse_date, default=None, help="Only reviews graded on/after this date")
    parser.add_argument("--until", type=parse_date, default=None, help="Only reviews graded on/before this date")
    parser.add_argument("--limit", type=int, default=None, help="Maximum number of reviews to process")
    return parser.parse_args()


async def main():
    """Run one backfill and print the outcome counters."""
    args = parse_args()
    setup_logging(settings.log_level, settings.environment)

    init_database()
    await create_tables()
    client = create_llm_client(settings)

    mode = EmbeddingMode.FORCE if args.force else EmbeddingMode.FRESH_MISSING
    print(f"Backfilling embeddings (mode={mode}, batch={settings.backfill_batch_size})")

    try:
        stats = await run_embedding_backfill(
            client,
            mode=mode,
            graded_since=args.since,
            graded_until=args.until,
            max_records=args.limit
        )
    finally:
        await client.close()
        await close_database()

    print("=" * 60)
    print(f"Total eligible: {stats.total}")
    print(f"Processed:      {stats.processed}")
    print(f"Skipped:        {stats.skipped}")
    print(f"Errors:         {stats.errors}")
    print("=" * 60)

    return 1 if stats.errors else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
