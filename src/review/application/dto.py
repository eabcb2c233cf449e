"""
Review Application DTOs
=======================

Data Transfer Objects for the review API layer.

Pydantic models for request/response validation.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from src.config import ReviewKind
from src.review.domain import (
    AgentIssueEntry,
    CandidateResult,
    ConversationReviewContent,
    IssueAnalysisReport,
    ReviewRecord,
    SubjectAnalysisResult,
    TicketReviewContent,
)


# ========== Type Aliases for Literals ==========
ReviewKindStr = Literal["ticket", "conversation"]
EmbeddingModeStr = Literal["fresh-missing", "force"]
MatchTypeStr = Literal["keyword", "embedding"]

MAX_TEXT_LENGTH = 50000


# ========== Request DTOs ==========

class ReviewCreateRequest(BaseModel):
    """Request model for registering a review."""
    subject_id: UUID = Field(..., description="Reviewed agent")
    ticket_number: Optional[str] = Field(None, max_length=255, description="External ticket number")
    kind: ReviewKindStr = Field(default="ticket")
    notes: str = Field(default="", max_length=MAX_TEXT_LENGTH)
    feedback: str = Field(default="", max_length=MAX_TEXT_LENGTH)
    short_description: Optional[str] = Field(None, max_length=MAX_TEXT_LENGTH)
    transcript: Optional[str] = Field(None, max_length=MAX_TEXT_LENGTH)
    quality_score: Optional[float] = Field(None, ge=0, le=100)
    categories: List[str] = Field(default_factory=list)
    graded_at: Optional[datetime] = None

    @model_validator(mode="after")
    def validate_kind_fields(self) -> "ReviewCreateRequest":
        """Transcripts belong to conversations, short descriptions to tickets."""
        if self.kind == ReviewKind.TICKET and self.transcript:
            raise ValueError("transcript is only allowed for conversation reviews")
        if self.kind == ReviewKind.CONVERSATION and self.short_description:
            raise ValueError("short_description is only allowed for ticket reviews")
        return self

    def to_domain(self) -> ReviewRecord:
        if self.kind == ReviewKind.CONVERSATION:
            content = ConversationReviewContent(
                notes=self.notes, feedback=self.feedback, transcript=self.transcript or ""
            )
        else:
            content = TicketReviewContent(
                notes=self.notes, feedback=self.feedback, short_description=self.short_description or ""
            )
        return ReviewRecord(
            id=None,
            subject_id=self.subject_id,
            ticket_number=self.ticket_number,
            content=content,
            quality_score=self.quality_score,
            categories=self.categories,
            graded_at=self.graded_at,
        )


class ReviewUpdateRequest(BaseModel):
    """Request model for editing a review. Only sent fields change."""
    ticket_number: Optional[str] = Field(None, max_length=255)
    notes: Optional[str] = Field(None, max_length=MAX_TEXT_LENGTH)
    feedback: Optional[str] = Field(None, max_length=MAX_TEXT_LENGTH)
    short_description: Optional[str] = Field(None, max_length=MAX_TEXT_LENGTH)
    transcript: Optional[str] = Field(None, max_length=MAX_TEXT_LENGTH)
    quality_score: Optional[float] = Field(None, ge=0, le=100)
    categories: Optional[List[str]] = None
    graded_at: Optional[datetime] = None

    def to_changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class SimilarReviewsRequest(BaseModel):
    """Request model for hybrid similarity search."""
    query_text: str = Field(..., description="Notes of the review being written")
    exclude_id: Optional[UUID] = Field(None, description="Review to leave out of results")
    limit: int = Field(default=10, ge=1, le=50)
    categories: List[str] = Field(default_factory=list, description="Only reviews sharing a category")

    @field_validator("query_text")
    @classmethod
    def validate_query_length(cls, v: str) -> str:
        """Ensure query is not too long."""
        if len(v) > 10000:
            raise ValueError("Query too long (max 10000 characters)")
        return v


class BackfillRequest(BaseModel):
    """Request model for an embedding backfill run."""
    mode: EmbeddingModeStr = Field(default="fresh-missing")
    graded_since: Optional[datetime] = None
    graded_until: Optional[datetime] = None
    max_records: Optional[int] = Field(None, ge=1)

    @model_validator(mode="after")
    def validate_window(self) -> "BackfillRequest":
        if self.graded_since and self.graded_until and self.graded_since > self.graded_until:
            raise ValueError("graded_since must not be after graded_until")
        return self


class AnalyzeIssuesRequest(BaseModel):
    """Request model for an issue analysis run."""
    subject_id: Optional[UUID] = Field(None, description="Single agent; all active agents when omitted")


# ========== Response DTOs ==========

class ReviewResponse(BaseModel):
    """Response model for a stored review."""
    id: UUID
    subject_id: UUID
    ticket_number: Optional[str]
    kind: ReviewKindStr
    notes: str
    feedback: str
    short_description: Optional[str] = None
    transcript: Optional[str] = None
    quality_score: Optional[float]
    categories: List[str]
    graded_at: Optional[datetime]
    embedding_stale: bool
    embedding_model: Optional[str]
    embedded_at: Optional[datetime]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    @classmethod
    def from_domain(cls, record: ReviewRecord) -> "ReviewResponse":
        content = record.content
        return cls(
            id=record.id,
            subject_id=record.subject_id,
            ticket_number=record.ticket_number,
            kind=record.kind,
            notes=content.notes,
            feedback=content.feedback,
            short_description=getattr(content, "short_description", None),
            transcript=getattr(content, "transcript", None),
            quality_score=record.quality_score,
            categories=record.categories,
            graded_at=record.graded_at,
            embedding_stale=record.embedding_stale,
            embedding_model=record.embedding_model,
            embedded_at=record.embedded_at,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class SimilarReviewItem(BaseModel):
    """One similar review, enriched for display."""
    document_id: UUID
    ticket_number: Optional[str]
    score: int = Field(..., ge=0, le=100)
    match_type: MatchTypeStr
    matched_keywords: List[str] = Field(default_factory=list)
    agent_name: Optional[str]
    notes: str
    feedback: str
    quality_score: Optional[float]
    categories: List[str]
    graded_at: Optional[datetime]

    @classmethod
    def from_match(
        cls,
        candidate: CandidateResult,
        record: ReviewRecord,
        agent_name: Optional[str]
    ) -> "SimilarReviewItem":
        return cls(
            document_id=candidate.document_id,
            ticket_number=record.ticket_number,
            score=candidate.score,
            match_type=candidate.match_type,
            matched_keywords=candidate.matched_keywords,
            agent_name=agent_name,
            notes=record.notes,
            feedback=record.feedback,
            quality_score=record.quality_score,
            categories=record.categories,
            graded_at=record.graded_at,
        )


class SimilarReviewsResponse(BaseModel):
    """Response model for similarity search."""
    results: List[SimilarReviewItem]
    total: int
    message: Optional[str] = None


class BackfillResponse(BaseModel):
    """Response model for an embedding backfill run."""
    mode: EmbeddingModeStr
    total: int
    processed: int
    skipped: int
    errors: int
    processing_time_ms: int


class EmbeddingStatusResponse(BaseModel):
    """Embedding coverage of graded reviews."""
    graded_total: int
    fresh: int
    missing: int
    stale: int


class SubjectAnalysisResponse(BaseModel):
    """Issue analysis outcome for one agent."""
    subject_id: UUID
    subject_name: str
    bad_count: int
    unresolved_count: int
    resolved_by_category: int
    resolved_by_embedding: int
    errors: int
    error: Optional[str] = None

    @classmethod
    def from_domain(cls, result: SubjectAnalysisResult) -> "SubjectAnalysisResponse":
        return cls(
            subject_id=result.subject_id,
            subject_name=result.subject_name,
            bad_count=result.bad_count,
            unresolved_count=result.unresolved_count,
            resolved_by_category=result.resolved_by_category,
            resolved_by_embedding=result.resolved_by_embedding,
            errors=result.errors,
            error=result.error,
        )


class AnalyzeIssuesResponse(BaseModel):
    """Response model for an issue analysis run."""
    started_at: datetime
    finished_at: Optional[datetime]
    agents_analyzed: int
    total_bad: int
    total_unresolved: int
    failed_agents: int
    results: List[SubjectAnalysisResponse]

    @classmethod
    def from_domain(cls, report: IssueAnalysisReport) -> "AnalyzeIssuesResponse":
        return cls(
            started_at=report.started_at,
            finished_at=report.finished_at,
            agents_analyzed=len(report.results),
            total_bad=report.total_bad,
            total_unresolved=report.total_unresolved,
            failed_agents=report.failed_subjects,
            results=[SubjectAnalysisResponse.from_domain(r) for r in report.results],
        )


class AgentIssueItem(BaseModel):
    """One unresolved issue of an agent."""
    review_id: UUID
    ticket_number: Optional[str]
    category: Optional[str]
    quality_score: float
    graded_at: datetime
    summary: str
    feedback_excerpt: str
    resolved: bool
    created_at: datetime

    @classmethod
    def from_domain(cls, entry: AgentIssueEntry) -> "AgentIssueItem":
        return cls(
            review_id=entry.review_id,
            ticket_number=entry.ticket_number,
            category=entry.category,
            quality_score=entry.quality_score,
            graded_at=entry.graded_at,
            summary=entry.summary,
            feedback_excerpt=entry.feedback_excerpt,
            resolved=entry.resolved,
            created_at=entry.created_at,
        )


class AgentIssuesResponse(BaseModel):
    """Current issue list of an agent."""
    subject_id: UUID
    subject_name: str
    issues_last_analyzed: Optional[datetime]
    total: int
    issues: List[AgentIssueItem]
