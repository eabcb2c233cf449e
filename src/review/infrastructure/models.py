"""
Review Infrastructure Models
============================

SQLAlchemy ORM models for the review module.
"""

from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from src.config import ReviewKind
from src.infrastructure.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AgentModel(Base):
    """
    Database model for Agent entity.

    Owned by the wider QA application; this service only reads it and
    stamps ``issues_last_analyzed``.
    """
    __tablename__ = "agents"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    team: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    position: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_removed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    issues_last_analyzed: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class ReviewModel(Base):
    """
    Database model for ReviewRecord entity.

    The embedding column is deferred: it is only loaded when a query asks
    for it with ``undefer``.
    """
    __tablename__ = "reviews"

    # Primary key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    subject_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("agents.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    ticket_number: Mapped[Optional[str]] = mapped_column(String(255), index=True, nullable=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False, default=ReviewKind.TICKET)

    # Grader text
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    feedback: Mapped[str] = mapped_column(Text, nullable=False, default="")
    short_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    transcript: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Grading
    quality_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    categories: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    graded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)

    # Embedding lifecycle
    embedding: Mapped[Optional[List[float]]] = mapped_column(
        JSON(none_as_null=True),
        nullable=True,
        deferred=True
    )
    embedding_stale: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    embedding_model: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    embedded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_reviews_subject_graded", "subject_id", "graded_at"),
    )


class AgentIssueModel(Base):
    """
    Database model for AgentIssueEntry.

    Rows for an agent are deleted and re-inserted on every analysis run.
    """
    __tablename__ = "agent_issues"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    subject_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("agents.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    review_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("reviews.id", ondelete="CASCADE"),
        nullable=False
    )

    ticket_number: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    quality_score: Mapped[float] = mapped_column(Float, nullable=False)
    graded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    feedback_excerpt: Mapped[str] = mapped_column(Text, nullable=False, default="")
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
