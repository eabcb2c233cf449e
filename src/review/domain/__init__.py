"""
Review Domain Layer
===================

Contains:
- Entities: ReviewRecord (with its content variants), Agent, AgentIssueEntry
- Results: CandidateResult, BackfillStats, SubjectAnalysisResult, IssueAnalysisReport
- Value Objects & pure functions: text normalization, keywords, cosine similarity

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from src.review.domain.entities import (
    Agent,
    AgentIssueEntry,
    BackfillStats,
    CandidateResult,
    ConversationReviewContent,
    IssueAnalysisReport,
    ReviewContent,
    ReviewRecord,
    SubjectAnalysisResult,
    TicketReviewContent,
)
from src.review.domain.value_objects import (
    DEFAULT_STOP_WORDS,
    EmbeddingConfig,
    IssueAnalysisConfig,
    IssueSummaryPromptBuilder,
    RetrievalConfig,
    cosine_similarity,
    extract_embedding_text,
    extract_keywords,
    keyword_match_score,
    normalize_text,
    similarity_to_score,
    truncate_for_provider,
)

__all__ = [
    # Entities
    "Agent",
    "AgentIssueEntry",
    "ConversationReviewContent",
    "ReviewContent",
    "ReviewRecord",
    "TicketReviewContent",
    # Results
    "BackfillStats",
    "CandidateResult",
    "IssueAnalysisReport",
    "SubjectAnalysisResult",
    # Value Objects & functions
    "DEFAULT_STOP_WORDS",
    "EmbeddingConfig",
    "IssueAnalysisConfig",
    "IssueSummaryPromptBuilder",
    "RetrievalConfig",
    "cosine_similarity",
    "extract_embedding_text",
    "extract_keywords",
    "keyword_match_score",
    "normalize_text",
    "similarity_to_score",
    "truncate_for_provider",
]
