"""
Review Infrastructure Layer
===========================

Contains:
- Models: SQLAlchemy ORM models (reviews, agents, agent issues)
- Repositories: Data access implementations and staleness tracking
- External: Provider adapters and the issue analysis scheduler
- Jobs: Service wiring and the offline job runners
"""

from src.review.infrastructure.models import AgentIssueModel, AgentModel, ReviewModel
from src.review.infrastructure.repositories import (
    SQLAlchemyAgentDirectory,
    SQLAlchemyAgentIssueRepository,
    SQLAlchemyReviewRepository,
)
from src.review.infrastructure.external import (
    EmbeddingProviderAdapter,
    IssueAnalysisScheduler,
    SummarizationProviderAdapter,
)

__all__ = [
    # Models
    "AgentIssueModel",
    "AgentModel",
    "ReviewModel",
    # Repositories
    "SQLAlchemyAgentDirectory",
    "SQLAlchemyAgentIssueRepository",
    "SQLAlchemyReviewRepository",
    # External
    "EmbeddingProviderAdapter",
    "IssueAnalysisScheduler",
    "SummarizationProviderAdapter",
]
