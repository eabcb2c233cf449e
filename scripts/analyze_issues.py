#!/usr/bin/env python3
"""
Analyze Agent Issues
====================

Recomputes the unresolved-issue list of one agent (--agent) or of every
active agent. Meant for cron in deployments without the in-process
weekly scheduler.
"""

import argparse
import asyncio
from pathlib import Path
from uuid import UUID

# Add src to path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.config import settings
from src.infrastructure.database import close_database, create_tables, init_database
from src.infrastructure.llm import create_llm_client
from src.review.infrastructure.jobs import run_issue_analysis
from src.shared.infrastructure.logging import setup_logging


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Recompute unresolved agent issues")
    parser.add_argument("--agent", type=UUID, default=None, help="Agent ID (default: all active agents)")
    return parser.parse_args()


async def main():
    args = parse_args()
    setup_logging(settings.log_level, settings.environment)

    init_database()
    await create_tables()
    client = create_llm_client(settings)

    try:
        report = await run_issue_analysis(client, subject_id=args.agent)
    finally:
        await client.close()
        await close_database()

    print(f"{'Agent':<30} {'Bad':>5} {'Open':>5} {'Cat':>5} {'Emb':>5} {'Err':>5}")
    print("-" * 60)
    for result in report.results:
        print(
            f"{result.subject_name[:30]:<30} {result.bad_count:>5} {result.unresolved_count:>5} "
            f"{result.resolved_by_category:>5} {result.resolved_by_embedding:>5} {result.errors:>5}"
        )
        if result.error:
            print(f"    failed: {result.error}")
    print("-" * 60)
    print(f"Agents: {len(report.results)}  Bad: {report.total_bad}  Unresolved: {report.total_unresolved}")

    return 1 if report.failed_subjects else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
