"""
Review Service Wiring and Offline Jobs
======================================

Builds application services from a database session and an LLM client,
and runs the two offline jobs (embedding backfill, issue analysis) in
their own session. Used by the HTTP layer, the scheduler and the scripts.
"""

import time
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from src.config import EmbeddingMode, Settings
from src.infrastructure.database import get_session_context
from src.infrastructure.llm import ILLMClient
from src.review.application import (
    BatchEmbeddingGenerator,
    EmbeddingService,
    IssueResolutionService,
    ReviewService,
    SimilarityService,
)
from src.review.domain import (
    BackfillStats,
    EmbeddingConfig,
    IssueAnalysisConfig,
    IssueAnalysisReport,
    RetrievalConfig,
)
from src.review.infrastructure.external import (
    EmbeddingProviderAdapter,
    SummarizationProviderAdapter,
    export_job_metrics,
)
from src.review.infrastructure.repositories import (
    SQLAlchemyAgentDirectory,
    SQLAlchemyAgentIssueRepository,
    SQLAlchemyReviewRepository,
)
from src.shared.infrastructure.logging import get_job_logger


def build_embedding_service(client: ILLMClient, config: Optional[Settings] = None) -> EmbeddingService:
    embedding_config = EmbeddingConfig.from_settings(config)
    return EmbeddingService(EmbeddingProviderAdapter(client, embedding_config), embedding_config)


def build_review_service(session: AsyncSession) -> ReviewService:
    return ReviewService(
        SQLAlchemyReviewRepository(session),
        SQLAlchemyAgentIssueRepository(session),
        SQLAlchemyAgentDirectory(session),
    )


def build_similarity_service(
    session: AsyncSession,
    client: ILLMClient,
    config: Optional[Settings] = None
) -> SimilarityService:
    return SimilarityService(
        SQLAlchemyReviewRepository(session),
        build_embedding_service(client, config),
        RetrievalConfig.from_settings(config),
    )


def build_backfill_generator(
    session: AsyncSession,
    client: ILLMClient,
    config: Optional[Settings] = None
) -> BatchEmbeddingGenerator:
    return BatchEmbeddingGenerator(
        SQLAlchemyReviewRepository(session),
        build_embedding_service(client, config),
        EmbeddingConfig.from_settings(config),
    )


def build_issue_resolution_service(
    session: AsyncSession,
    client: ILLMClient,
    config: Optional[Settings] = None
) -> IssueResolutionService:
    analysis_config = IssueAnalysisConfig.from_settings(config)
    return IssueResolutionService(
        SQLAlchemyReviewRepository(session),
        SQLAlchemyAgentIssueRepository(session),
        SQLAlchemyAgentDirectory(session),
        build_embedding_service(client, config),
        SummarizationProviderAdapter(client, analysis_config),
        analysis_config,
    )


async def run_embedding_backfill(
    client: ILLMClient,
    mode: str = EmbeddingMode.FRESH_MISSING,
    graded_since: Optional[datetime] = None,
    graded_until: Optional[datetime] = None,
    max_records: Optional[int] = None,
    config: Optional[Settings] = None
) -> BackfillStats:
    """Run an embedding backfill in its own session."""
    logger = get_job_logger(__name__, "embedding_backfill")
    started = time.perf_counter()

    async with get_session_context() as session:
        generator = build_backfill_generator(session, client, config)
        stats = await generator.backfill_embeddings(
            mode,
            graded_since=graded_since,
            graded_until=graded_until,
            max_records=max_records
        )

    logger.info("Embedding backfill job complete", extra={"mode": mode, **stats.as_dict()})
    await export_job_metrics("embedding_backfill", stats.as_dict(), started)
    return stats


async def run_issue_analysis(
    client: ILLMClient,
    subject_id: Optional[UUID] = None,
    config: Optional[Settings] = None
) -> IssueAnalysisReport:
    """Run the issue analysis in its own session."""
    logger = get_job_logger(__name__, "issue_analysis")
    started = time.perf_counter()

    async with get_session_context() as session:
        service = build_issue_resolution_service(session, client, config)
        report = await service.analyze_issues(subject_id)

    counters = {
        "agents": len(report.results),
        "bad": report.total_bad,
        "unresolved": report.total_unresolved,
        "failed_agents": report.failed_subjects,
    }
    logger.info("Issue analysis job complete", extra=counters)
    await export_job_metrics("issue_analysis", counters, started)
    return report


async def scheduled_issue_analysis(client: ILLMClient, config: Optional[Settings] = None) -> None:
    """Weekly job entry point; failures are logged, never raised into the scheduler."""
    logger = get_job_logger(__name__, "issue_analysis")
    try:
        await run_issue_analysis(client, config=config)
    except Exception:
        logger.exception("Scheduled issue analysis failed")
