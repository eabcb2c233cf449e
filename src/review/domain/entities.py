"""
Review Domain Entities
======================

Pure Python business objects for graded reviews, agents and the issue
entries derived from them.

Review content varies by kind: ticket reviews carry a short description,
conversation reviews carry the chat transcript. Both share notes and
feedback written by the grader.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Union
from uuid import UUID

from src.config import ReviewKind


@dataclass(frozen=True)
class TicketReviewContent:
    """Grader text for a reviewed ticket."""
    notes: str = ""
    feedback: str = ""
    short_description: str = ""

    @property
    def kind(self) -> str:
        return ReviewKind.TICKET


@dataclass(frozen=True)
class ConversationReviewContent:
    """Grader text for a reviewed live-chat conversation."""
    notes: str = ""
    feedback: str = ""
    transcript: str = ""

    @property
    def kind(self) -> str:
        return ReviewKind.CONVERSATION


ReviewContent = Union[TicketReviewContent, ConversationReviewContent]


@dataclass
class ReviewRecord:
    """
    A graded (or not yet graded) review of one agent interaction.

    ``embedding`` is loaded only when explicitly requested; a record read
    without it has ``embedding=None`` even if one is stored.
    """
    id: Optional[UUID]
    subject_id: UUID
    ticket_number: Optional[str]
    content: ReviewContent
    quality_score: Optional[float] = None
    categories: List[str] = field(default_factory=list)
    graded_at: Optional[datetime] = None
    embedding: Optional[List[float]] = None
    embedding_stale: bool = True
    embedding_model: Optional[str] = None
    embedded_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def kind(self) -> str:
        return self.content.kind

    @property
    def notes(self) -> str:
        return self.content.notes

    @property
    def feedback(self) -> str:
        return self.content.feedback

    @property
    def has_fresh_embedding(self) -> bool:
        """Fresh = stored, non-empty and not invalidated by a later edit."""
        return bool(self.embedding) and not self.embedding_stale

    @property
    def first_category(self) -> Optional[str]:
        return self.categories[0] if self.categories else None

    def shares_category_with(self, other: "ReviewRecord") -> bool:
        return bool(set(self.categories) & set(other.categories))


@dataclass
class Agent:
    """Support agent as seen by the review service (read-mostly)."""
    id: UUID
    name: str
    team: Optional[str] = None
    position: Optional[str] = None
    is_removed: bool = False
    issues_last_analyzed: Optional[datetime] = None


@dataclass
class AgentIssueEntry:
    """
    An unresolved performance issue of an agent.

    Derived data: the whole list of an agent is replaced on every analysis
    run, so entries are always persisted with ``resolved=False``.
    """
    subject_id: UUID
    review_id: UUID
    ticket_number: Optional[str]
    category: Optional[str]
    quality_score: float
    graded_at: datetime
    summary: str
    feedback_excerpt: str = ""
    resolved: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: Optional[UUID] = None


@dataclass
class CandidateResult:
    """One similar review found by a single search call (never persisted)."""
    document_id: UUID
    score: int  # 0..100
    match_type: str
    matched_keywords: List[str] = field(default_factory=list)


@dataclass
class BackfillStats:
    """Per-run outcome counters of an embedding backfill."""
    total: int = 0
    processed: int = 0
    skipped: int = 0
    errors: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "processed": self.processed,
            "skipped": self.skipped,
            "errors": self.errors,
        }


@dataclass
class SubjectAnalysisResult:
    """Issue analysis outcome for one agent."""
    subject_id: UUID
    subject_name: str
    bad_count: int = 0
    unresolved_count: int = 0
    resolved_by_category: int = 0
    resolved_by_embedding: int = 0
    errors: int = 0
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class IssueAnalysisReport:
    """Outcome of one issue analysis run over one or all agents."""
    started_at: datetime
    finished_at: Optional[datetime] = None
    results: List[SubjectAnalysisResult] = field(default_factory=list)

    @property
    def total_bad(self) -> int:
        return sum(r.bad_count for r in self.results)

    @property
    def total_unresolved(self) -> int:
        return sum(r.unresolved_count for r in self.results)

    @property
    def failed_subjects(self) -> int:
        return sum(1 for r in self.results if r.failed)

    @property
    def duration_ms(self) -> int:
        if self.finished_at is None:
            return 0
        return int((self.finished_at - self.started_at).total_seconds() * 1000)
