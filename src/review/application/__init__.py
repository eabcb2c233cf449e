"""
Review Application Layer
========================

Contains:
- Services: embedding backfill, hybrid similarity search, issue resolution
- Batching: bounded-concurrency scheduler and rate gate for offline jobs
- DTOs: Data transfer objects for API serialization

This layer depends on the domain layer and repository/provider interfaces,
but not on concrete infrastructure implementations.
"""

from src.review.application.batching import BatchScheduler, IntervalRateLimiter
from src.review.application.services import (
    BatchEmbeddingGenerator,
    EmbeddingService,
    IAgentDirectory,
    IAgentIssueRepository,
    IEmbeddingProvider,
    IReviewRepository,
    ISummarizationProvider,
    IssueResolutionService,
    ReviewService,
    SimilarityService,
    fuse_candidates,
)

__all__ = [
    # Services
    "BatchEmbeddingGenerator",
    "EmbeddingService",
    "IssueResolutionService",
    "ReviewService",
    "SimilarityService",
    "fuse_candidates",
    # Batching
    "BatchScheduler",
    "IntervalRateLimiter",
    # Interfaces
    "IAgentDirectory",
    "IAgentIssueRepository",
    "IEmbeddingProvider",
    "IReviewRepository",
    "ISummarizationProvider",
]
