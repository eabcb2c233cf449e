"""
Review Infrastructure Repositories
==================================

Concrete implementations of repository interfaces using SQLAlchemy.

This layer contains the data access logic - how we store and retrieve
reviews, agents and issue entries, and where embedding staleness is
tracked.
"""

import json
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence
from uuid import UUID, uuid4

from sqlalchemy import Text, and_, case, cast, delete, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import undefer

from src.config import EmbeddingMode, ReviewKind
from src.core import RepositoryException, ResourceNotFoundException, ValidationException
from src.review.application import IAgentDirectory, IAgentIssueRepository, IReviewRepository
from src.review.domain import (
    Agent,
    AgentIssueEntry,
    ConversationReviewContent,
    ReviewRecord,
    TicketReviewContent,
)

# Changing any of these invalidates a stored embedding
CONTENT_FIELDS = ("notes", "feedback", "short_description", "transcript")
UPDATABLE_FIELDS = CONTENT_FIELDS + ("ticket_number", "quality_score", "categories", "graded_at")


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; all stored times are UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _graded():
    from src.review.infrastructure.models import ReviewModel

    return and_(ReviewModel.quality_score.is_not(None), ReviewModel.graded_at.is_not(None))


def _category_filter(categories: Sequence[str]):
    """Any-of match on the JSON category list, portable across backends."""
    from src.review.infrastructure.models import ReviewModel

    as_text = cast(ReviewModel.categories, Text)
    return or_(*[
        as_text.like(f"%{_escape_like(json.dumps(category))}%", escape="\\")
        for category in categories
    ])


def _to_entity(model, with_embedding: bool = False) -> ReviewRecord:
    if model.kind == ReviewKind.CONVERSATION:
        content = ConversationReviewContent(
            notes=model.notes or "",
            feedback=model.feedback or "",
            transcript=model.transcript or ""
        )
    else:
        content = TicketReviewContent(
            notes=model.notes or "",
            feedback=model.feedback or "",
            short_description=model.short_description or ""
        )

    return ReviewRecord(
        id=model.id,
        subject_id=model.subject_id,
        ticket_number=model.ticket_number,
        content=content,
        quality_score=model.quality_score,
        categories=list(model.categories or []),
        graded_at=_aware(model.graded_at),
        # Touching an unloaded deferred column would trigger lazy IO
        embedding=list(model.embedding) if with_embedding and model.embedding else None,
        embedding_stale=model.embedding_stale,
        embedding_model=model.embedding_model,
        embedded_at=_aware(model.embedded_at),
        created_at=_aware(model.created_at),
        updated_at=_aware(model.updated_at),
    )


class SQLAlchemyReviewRepository(IReviewRepository):
    """
    SQLAlchemy implementation of the review repository.

    Every write that changes review text marks the embedding stale;
    ``save_embedding`` is the only way to clear the flag.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def _get_model(self, review_id: UUID, with_embedding: bool = False):
        from src.review.infrastructure.models import ReviewModel

        stmt = select(ReviewModel).where(ReviewModel.id == review_id)
        if with_embedding:
            stmt = stmt.options(undefer(ReviewModel.embedding))
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_id(self, review_id: UUID, with_embedding: bool = False) -> Optional[ReviewRecord]:
        """Get review by ID."""
        model = await self._get_model(review_id, with_embedding)
        return _to_entity(model, with_embedding) if model else None

    async def get_many(self, review_ids: Sequence[UUID]) -> List[ReviewRecord]:
        from src.review.infrastructure.models import ReviewModel

        if not review_ids:
            return []
        stmt = select(ReviewModel).where(ReviewModel.id.in_(list(review_ids)))
        result = await self._session.execute(stmt)
        return [_to_entity(m) for m in result.scalars().all()]

    async def create(self, record: ReviewRecord) -> ReviewRecord:
        """Create new review. It has no embedding yet, so it starts stale."""
        from src.review.infrastructure.models import ReviewModel

        content = record.content
        model = ReviewModel(
            id=record.id or uuid4(),
            subject_id=record.subject_id,
            ticket_number=record.ticket_number,
            kind=record.kind,
            notes=content.notes or "",
            feedback=content.feedback or "",
            short_description=getattr(content, "short_description", None) or None,
            transcript=getattr(content, "transcript", None) or None,
            quality_score=record.quality_score,
            categories=list(record.categories),
            graded_at=_aware(record.graded_at),
            embedding=None,
            embedding_stale=True,
            created_at=datetime.now(timezone.utc),
        )

        self._session.add(model)
        await self._session.flush()

        return _to_entity(model)

    async def update(self, review_id: UUID, changes: dict) -> ReviewRecord:
        """
        Apply field changes to a review.

        Raises:
            ResourceNotFoundException: If the review does not exist
            ValidationException: On unknown fields or fields foreign to the review kind
        """
        model = await self._get_model(review_id)
        if model is None:
            raise ResourceNotFoundException("Review", str(review_id))

        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValidationException(f"Fields cannot be updated: {sorted(unknown)}")
        if changes.get("transcript") and model.kind != ReviewKind.CONVERSATION:
            raise ValidationException("transcript is only allowed for conversation reviews")
        if changes.get("short_description") and model.kind != ReviewKind.TICKET:
            raise ValidationException("short_description is only allowed for ticket reviews")

        content_changed = False
        for field, value in changes.items():
            if field in ("notes", "feedback"):
                value = value or ""
            elif field in ("short_description", "transcript"):
                value = value or None
            elif field == "categories":
                value = list(value or [])
            elif field == "graded_at":
                value = _aware(value)

            if field in CONTENT_FIELDS and (getattr(model, field) or "") != (value or ""):
                content_changed = True
            setattr(model, field, value)

        if content_changed:
            model.embedding_stale = True
        model.updated_at = datetime.now(timezone.utc)

        await self._session.flush()

        return _to_entity(model)

    async def find_for_embedding(
        self,
        mode: str,
        graded_since: Optional[datetime] = None,
        graded_until: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[ReviewRecord]:
        """Graded reviews with notes or feedback, oldest grading first."""
        from src.review.infrastructure.models import ReviewModel

        stmt = select(ReviewModel).where(
            _graded(),
            or_(ReviewModel.notes != "", ReviewModel.feedback != "")
        )
        if mode == EmbeddingMode.FRESH_MISSING:
            # Empty vectors are never stored, so NULL covers "absent or empty"
            stmt = stmt.where(or_(ReviewModel.embedding.is_(None), ReviewModel.embedding_stale.is_(True)))
        if graded_since is not None:
            stmt = stmt.where(ReviewModel.graded_at >= graded_since)
        if graded_until is not None:
            stmt = stmt.where(ReviewModel.graded_at <= graded_until)

        stmt = stmt.order_by(ReviewModel.graded_at.asc(), ReviewModel.id.asc())
        if limit:
            stmt = stmt.limit(limit)

        result = await self._session.execute(stmt)
        return [_to_entity(m) for m in result.scalars().all()]

    async def save_embedding(self, review_id: UUID, embedding: List[float], model: str) -> None:
        """
        Store a computed embedding and clear the stale flag.

        Raises:
            ValidationException: On an empty vector
            RepositoryException: If the review no longer exists
        """
        from src.review.infrastructure.models import ReviewModel

        if not embedding:
            raise ValidationException("Refusing to store an empty embedding")

        row = await self._session.get(ReviewModel, review_id)
        if row is None:
            raise RepositoryException(f"Review {review_id} not found")

        row.embedding = [float(x) for x in embedding]
        row.embedding_stale = False
        row.embedding_model = model
        row.embedded_at = datetime.now(timezone.utc)

        await self._session.flush()

    async def find_keyword_candidates(
        self,
        keywords: Sequence[str],
        exclude_ids: Sequence[UUID],
        categories: Optional[Sequence[str]],
        limit: int
    ) -> List[ReviewRecord]:
        """Graded reviews whose notes contain any keyword."""
        from src.review.infrastructure.models import ReviewModel

        if not keywords:
            return []

        stmt = select(ReviewModel).where(
            _graded(),
            ReviewModel.notes != "",
            ReviewModel.feedback != "",
            or_(*[
                ReviewModel.notes.ilike(f"%{_escape_like(keyword)}%", escape="\\")
                for keyword in keywords
            ])
        )
        if exclude_ids:
            stmt = stmt.where(ReviewModel.id.not_in(list(exclude_ids)))
        if categories:
            stmt = stmt.where(_category_filter(categories))
        stmt = stmt.limit(limit)

        try:
            result = await self._session.execute(stmt)
        except SQLAlchemyError as e:
            raise RepositoryException(f"Keyword candidate query failed: {e}")
        return [_to_entity(m) for m in result.scalars().all()]

    async def find_vector_candidates(
        self,
        exclude_ids: Sequence[UUID],
        categories: Optional[Sequence[str]],
        limit: int
    ) -> List[ReviewRecord]:
        """Graded reviews with a fresh embedding, most recently graded first."""
        from src.review.infrastructure.models import ReviewModel

        stmt = (
            select(ReviewModel)
            .options(undefer(ReviewModel.embedding))
            .where(
                _graded(),
                ReviewModel.notes != "",
                ReviewModel.feedback != "",
                ReviewModel.embedding.is_not(None),
                ReviewModel.embedding_stale.is_(False)
            )
        )
        if exclude_ids:
            stmt = stmt.where(ReviewModel.id.not_in(list(exclude_ids)))
        if categories:
            stmt = stmt.where(_category_filter(categories))
        stmt = stmt.order_by(ReviewModel.graded_at.desc()).limit(limit)

        try:
            result = await self._session.execute(stmt)
        except SQLAlchemyError as e:
            raise RepositoryException(f"Embedding candidate query failed: {e}")
        return [_to_entity(m, with_embedding=True) for m in result.scalars().all()]

    async def find_graded_for_subject(self, subject_id: UUID, graded_since: datetime) -> List[ReviewRecord]:
        from src.review.infrastructure.models import ReviewModel

        stmt = (
            select(ReviewModel)
            .options(undefer(ReviewModel.embedding))
            .where(
                ReviewModel.subject_id == subject_id,
                _graded(),
                ReviewModel.graded_at >= graded_since
            )
            .order_by(ReviewModel.graded_at.asc(), ReviewModel.id.asc())
        )
        result = await self._session.execute(stmt)
        return [_to_entity(m, with_embedding=True) for m in result.scalars().all()]

    async def embedding_status(self) -> Dict[str, int]:
        """Fresh / missing / stale embedding counts among graded reviews."""
        from src.review.infrastructure.models import ReviewModel

        has_vector = ReviewModel.embedding.is_not(None)
        stmt = select(
            func.count(ReviewModel.id),
            func.sum(case((and_(has_vector, ReviewModel.embedding_stale.is_(False)), 1), else_=0)),
            func.sum(case((ReviewModel.embedding.is_(None), 1), else_=0)),
            func.sum(case((and_(has_vector, ReviewModel.embedding_stale.is_(True)), 1), else_=0)),
        ).where(_graded())

        result = await self._session.execute(stmt)
        total, fresh, missing, stale = result.one()
        return {
            "graded_total": total or 0,
            "fresh": fresh or 0,
            "missing": missing or 0,
            "stale": stale or 0,
        }

    async def commit(self) -> None:
        await self._session.commit()

    async def rollback(self) -> None:
        await self._session.rollback()


class SQLAlchemyAgentIssueRepository(IAgentIssueRepository):
    """SQLAlchemy implementation for agent issue entries."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def replace_for_subject(self, subject_id: UUID, entries: List[AgentIssueEntry]) -> None:
        """Delete the agent's previous issues and insert the new set."""
        from src.review.infrastructure.models import AgentIssueModel

        await self._session.execute(
            delete(AgentIssueModel).where(AgentIssueModel.subject_id == subject_id)
        )
        self._session.add_all([
            AgentIssueModel(
                id=entry.id or uuid4(),
                subject_id=subject_id,
                review_id=entry.review_id,
                ticket_number=entry.ticket_number,
                category=entry.category,
                quality_score=entry.quality_score,
                graded_at=entry.graded_at,
                summary=entry.summary,
                feedback_excerpt=entry.feedback_excerpt,
                resolved=False,
                created_at=entry.created_at,
            )
            for entry in entries
        ])
        await self._session.flush()

    async def list_for_subject(self, subject_id: UUID) -> List[AgentIssueEntry]:
        from src.review.infrastructure.models import AgentIssueModel

        stmt = (
            select(AgentIssueModel)
            .where(AgentIssueModel.subject_id == subject_id)
            .order_by(AgentIssueModel.graded_at.desc())
        )
        result = await self._session.execute(stmt)
        return [
            AgentIssueEntry(
                id=m.id,
                subject_id=m.subject_id,
                review_id=m.review_id,
                ticket_number=m.ticket_number,
                category=m.category,
                quality_score=m.quality_score,
                graded_at=_aware(m.graded_at),
                summary=m.summary,
                feedback_excerpt=m.feedback_excerpt,
                resolved=m.resolved,
                created_at=_aware(m.created_at),
            )
            for m in result.scalars().all()
        ]


class SQLAlchemyAgentDirectory(IAgentDirectory):
    """Agent lookups backed by the shared agents table."""

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _to_entity(model) -> Agent:
        return Agent(
            id=model.id,
            name=model.name,
            team=model.team,
            position=model.position,
            is_removed=model.is_removed,
            issues_last_analyzed=_aware(model.issues_last_analyzed),
        )

    async def get(self, subject_id: UUID) -> Optional[Agent]:
        from src.review.infrastructure.models import AgentModel

        model = await self._session.get(AgentModel, subject_id)
        return self._to_entity(model) if model else None

    async def list_active(self) -> List[Agent]:
        from src.review.infrastructure.models import AgentModel

        stmt = select(AgentModel).where(AgentModel.is_removed.is_(False)).order_by(AgentModel.name)
        result = await self._session.execute(stmt)
        return [self._to_entity(m) for m in result.scalars().all()]

    async def get_names(self, subject_ids: Sequence[UUID]) -> Dict[UUID, str]:
        from src.review.infrastructure.models import AgentModel

        if not subject_ids:
            return {}
        stmt = select(AgentModel.id, AgentModel.name).where(AgentModel.id.in_(list(subject_ids)))
        result = await self._session.execute(stmt)
        return {row.id: row.name for row in result.all()}

    async def mark_analyzed(self, subject_id: UUID, analyzed_at: datetime) -> None:
        from src.review.infrastructure.models import AgentModel

        model = await self._session.get(AgentModel, subject_id)
        if model is None:
            raise RepositoryException(f"Agent {subject_id} not found")
        model.issues_last_analyzed = analyzed_at
        await self._session.flush()
