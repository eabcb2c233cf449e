"""
Review Application Services
===========================

Application services orchestrate the review domain and coordinate
repositories and provider adapters.

Following SOLID principles:
- Single Responsibility: Each service has one clear purpose
- Dependency Inversion: Depend on abstractions (repositories, providers),
  not concrete implementations
"""

import asyncio
import warnings
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from src.config import EmbeddingMode, MatchType, ResolutionMethod, VALID_EMBEDDING_MODES
from src.core import (
    DataIntegrityWarning,
    ExternalServiceException,
    InputException,
    RepositoryException,
    ResourceNotFoundException,
    ValidationException,
)
from src.review.application.batching import BatchScheduler, IntervalRateLimiter
from src.review.domain import (
    Agent,
    AgentIssueEntry,
    BackfillStats,
    CandidateResult,
    EmbeddingConfig,
    IssueAnalysisConfig,
    IssueAnalysisReport,
    IssueSummaryPromptBuilder,
    RetrievalConfig,
    ReviewRecord,
    SubjectAnalysisResult,
    cosine_similarity,
    extract_embedding_text,
    extract_keywords,
    keyword_match_score,
    normalize_text,
    similarity_to_score,
)
from src.shared.infrastructure.logging import get_logger, log_latency

logger = get_logger(__name__)


# ========== Repository Interfaces (Dependency Inversion) ==========

class IReviewRepository(ABC):
    """Interface for review record data access."""

    @abstractmethod
    async def get_by_id(self, review_id: UUID, with_embedding: bool = False) -> Optional[ReviewRecord]:
        """Get a review, optionally with its stored embedding."""

    @abstractmethod
    async def get_many(self, review_ids: Sequence[UUID]) -> List[ReviewRecord]:
        """Get several reviews (without embeddings)."""

    @abstractmethod
    async def create(self, record: ReviewRecord) -> ReviewRecord:
        """Create a review. New reviews start with a stale embedding."""

    @abstractmethod
    async def update(self, review_id: UUID, changes: dict) -> ReviewRecord:
        """Apply field changes; content changes mark the embedding stale."""

    @abstractmethod
    async def find_for_embedding(
        self,
        mode: str,
        graded_since: Optional[datetime] = None,
        graded_until: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[ReviewRecord]:
        """Graded reviews with text that need an embedding under ``mode``."""

    @abstractmethod
    async def save_embedding(self, review_id: UUID, embedding: List[float], model: str) -> None:
        """Store a computed embedding and clear the stale flag."""

    @abstractmethod
    async def find_keyword_candidates(
        self,
        keywords: Sequence[str],
        exclude_ids: Sequence[UUID],
        categories: Optional[Sequence[str]],
        limit: int
    ) -> List[ReviewRecord]:
        """Graded reviews whose notes contain any keyword (case-insensitive)."""

    @abstractmethod
    async def find_vector_candidates(
        self,
        exclude_ids: Sequence[UUID],
        categories: Optional[Sequence[str]],
        limit: int
    ) -> List[ReviewRecord]:
        """Graded reviews with a fresh embedding, embeddings loaded."""

    @abstractmethod
    async def find_graded_for_subject(self, subject_id: UUID, graded_since: datetime) -> List[ReviewRecord]:
        """Scored reviews of one agent graded since a date, oldest first, embeddings loaded."""

    @abstractmethod
    async def embedding_status(self) -> Dict[str, int]:
        """Counts of graded reviews by embedding state."""

    @abstractmethod
    async def commit(self) -> None:
        """Commit the unit of work."""

    @abstractmethod
    async def rollback(self) -> None:
        """Discard uncommitted changes."""


class IAgentIssueRepository(ABC):
    """Interface for derived agent issue entries."""

    @abstractmethod
    async def replace_for_subject(self, subject_id: UUID, entries: List[AgentIssueEntry]) -> None:
        """Replace the whole issue list of an agent."""

    @abstractmethod
    async def list_for_subject(self, subject_id: UUID) -> List[AgentIssueEntry]:
        """Current issue list of an agent, newest review first."""


class IAgentDirectory(ABC):
    """Interface for agent lookups."""

    @abstractmethod
    async def get(self, subject_id: UUID) -> Optional[Agent]:
        """Get an agent by ID."""

    @abstractmethod
    async def list_active(self) -> List[Agent]:
        """All agents not marked as removed."""

    @abstractmethod
    async def get_names(self, subject_ids: Sequence[UUID]) -> Dict[UUID, str]:
        """Display names keyed by agent ID."""

    @abstractmethod
    async def mark_analyzed(self, subject_id: UUID, analyzed_at: datetime) -> None:
        """Stamp ``issues_last_analyzed``."""


class IEmbeddingProvider(ABC):
    """Interface for the external embedding model."""

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Model recorded next to stored embeddings."""

    @abstractmethod
    async def embed(self, text: str) -> Optional[List[float]]:
        """
        Embed text. ``None`` only for empty input.

        Raises:
            LLMException: On provider failure or wrong dimensionality
        """


class ISummarizationProvider(ABC):
    """Interface for the external summarization model."""

    @abstractmethod
    async def summarize(self, record: ReviewRecord) -> str:
        """
        One-sentence summary of what went wrong in a review.

        Raises:
            LLMException: On provider failure
        """


# ========== Application Services ==========

class EmbeddingService:
    """
    Gatekeeper in front of the embedding provider.

    Texts shorter than the configured minimum never reach the provider.
    """

    def __init__(self, provider: IEmbeddingProvider, config: EmbeddingConfig):
        self._provider = provider
        self._config = config

    @property
    def model_name(self) -> str:
        return self._provider.model_name

    @property
    def min_text_length(self) -> int:
        return self._config.min_text_length

    def ensure_embeddable(self, text: Optional[str]) -> str:
        """
        Normalize text and check it is long enough to embed.

        Raises:
            InputException: If the normalized text is below the minimum length
        """
        normalized = normalize_text(text)
        if len(normalized) < self._config.min_text_length:
            raise InputException(len(normalized), self._config.min_text_length)
        return normalized

    async def embed_text(self, text: Optional[str]) -> Optional[List[float]]:
        return await self._provider.embed(self.ensure_embeddable(text))

    async def embed_record(self, record: ReviewRecord) -> Optional[List[float]]:
        return await self.embed_text(extract_embedding_text(record.content))


class BatchEmbeddingGenerator:
    """
    Backfills review embeddings under provider rate limits.

    Provider calls of a batch run concurrently; their results are written
    one by one once the batch is done and committed per batch, so a crash
    loses at most one batch of work.
    """

    def __init__(
        self,
        reviews: IReviewRepository,
        embeddings: EmbeddingService,
        config: EmbeddingConfig
    ):
        self._reviews = reviews
        self._embeddings = embeddings
        self._scheduler = BatchScheduler(
            config.batch_size,
            IntervalRateLimiter(config.batch_delay_seconds)
        )

    async def backfill_embeddings(
        self,
        mode: str = EmbeddingMode.FRESH_MISSING,
        graded_since: Optional[datetime] = None,
        graded_until: Optional[datetime] = None,
        max_records: Optional[int] = None
    ) -> BackfillStats:
        """
        Compute embeddings for graded reviews.

        Args:
            mode: ``fresh-missing`` (absent or stale only) or ``force`` (all)
            graded_since: Only reviews graded at or after this time
            graded_until: Only reviews graded at or before this time
            max_records: Cap on the number of reviews selected

        Returns:
            BackfillStats with total/processed/skipped/errors counts
        """
        if mode not in VALID_EMBEDDING_MODES:
            raise ValidationException(
                f"Invalid embedding mode: {mode}",
                {"allowed": VALID_EMBEDDING_MODES}
            )

        records = await self._reviews.find_for_embedding(
            mode, graded_since=graded_since, graded_until=graded_until, limit=max_records
        )
        stats = BackfillStats(total=len(records))
        logger.info(
            "Embedding backfill started",
            extra={"mode": mode, "total": stats.total, "batch_size": self._scheduler.batch_size}
        )

        batch_number = 0
        async for batch, outcomes in self._scheduler.run(records, self._embeddings.embed_record):
            batch_number += 1
            for record, outcome in zip(batch, outcomes):
                if isinstance(outcome, InputException) or outcome is None:
                    stats.skipped += 1
                elif isinstance(outcome, ExternalServiceException):
                    stats.errors += 1
                    logger.warning(
                        "Embedding failed",
                        extra={"review_id": str(record.id), "error": outcome.message}
                    )
                elif isinstance(outcome, Exception):
                    raise outcome
                else:
                    await self._reviews.save_embedding(record.id, outcome, self._embeddings.model_name)
                    stats.processed += 1

            await self._reviews.commit()
            logger.info(
                "Embedding batch done",
                extra={"batch": batch_number, **stats.as_dict()}
            )

        logger.info("Embedding backfill finished", extra={"mode": mode, **stats.as_dict()})
        return stats


def fuse_candidates(
    keyword_results: Sequence[CandidateResult],
    vector_results: Sequence[CandidateResult],
    limit: int
) -> List[CandidateResult]:
    """
    Merge both candidate lists by document, keeping the higher score.

    Sorted by score descending; ties keep keyword results first.
    """
    merged: Dict[UUID, CandidateResult] = {}
    for candidate in list(keyword_results) + list(vector_results):
        existing = merged.get(candidate.document_id)
        if existing is None or candidate.score > existing.score:
            merged[candidate.document_id] = candidate

    ranked = sorted(merged.values(), key=lambda c: c.score, reverse=True)
    return ranked[:max(0, limit)]


class SimilarityService:
    """
    Hybrid similarity search over graded reviews.

    Keyword matches are found first; the embedding search then looks only
    at reviews the keyword pass did not surface. The embedding path never
    fails the search: on timeout or provider error the keyword results are
    returned alone.
    """

    def __init__(
        self,
        reviews: IReviewRepository,
        embeddings: EmbeddingService,
        config: RetrievalConfig
    ):
        self._reviews = reviews
        self._embeddings = embeddings
        self._config = config

    async def find_similar(
        self,
        query_text: Optional[str],
        exclude_id: Optional[UUID] = None,
        limit: Optional[int] = None,
        categories: Optional[Sequence[str]] = None
    ) -> List[CandidateResult]:
        """
        Find past reviews resembling the query text.

        Args:
            query_text: Notes of the review being written (markup allowed)
            exclude_id: Review never to return (usually the one being edited)
            limit: Maximum results, defaults to the configured limit
            categories: Restrict candidates to reviews sharing any category

        Returns:
            Ranked CandidateResult list (possibly empty)
        """
        limit = min(limit or self._config.default_limit, self._config.max_limit)
        exclude_ids = [exclude_id] if exclude_id else []
        categories = list(categories) if categories else None

        # Provider round-trip overlaps the keyword query
        embedding_task = asyncio.ensure_future(self._embed_query(query_text))
        try:
            keyword_results = await self._keyword_candidates(query_text, exclude_ids, categories)
            query_vector = await embedding_task
        finally:
            if not embedding_task.done():
                embedding_task.cancel()

        vector_results: List[CandidateResult] = []
        if query_vector:
            vector_results = await self._vector_candidates(
                query_vector,
                exclude_ids + [c.document_id for c in keyword_results],
                categories
            )

        results = fuse_candidates(keyword_results, vector_results, limit)
        logger.info(
            "Similar reviews found",
            extra={
                "keyword_matches": len(keyword_results),
                "embedding_matches": len(vector_results),
                "returned": len(results),
            }
        )
        return results

    async def _keyword_candidates(
        self,
        query_text: Optional[str],
        exclude_ids: List[UUID],
        categories: Optional[List[str]]
    ) -> List[CandidateResult]:
        keywords = extract_keywords(
            query_text,
            min_length=self._config.min_token_length,
            max_tokens=self._config.max_tokens,
            stop_words=self._config.stop_words
        )
        if not keywords:
            return []

        with log_latency(logger, "keyword_candidates", keywords=len(keywords)):
            records = await self._reviews.find_keyword_candidates(
                keywords, exclude_ids, categories, self._config.keyword_candidate_ceiling
            )

        results = []
        for record in records:
            score, matched = keyword_match_score(keywords, record.notes)
            if score >= self._config.keyword_score_floor:
                results.append(CandidateResult(
                    document_id=record.id,
                    score=score,
                    match_type=MatchType.KEYWORD,
                    matched_keywords=matched
                ))

        results.sort(key=lambda c: c.score, reverse=True)
        return results[:self._config.keyword_top_n]

    async def _embed_query(self, query_text: Optional[str]) -> Optional[List[float]]:
        """Query embedding, or ``None`` whenever the embedding path is unavailable."""
        try:
            return await asyncio.wait_for(
                self._embeddings.embed_text(query_text),
                timeout=self._config.embedding_timeout_seconds
            )
        except InputException:
            return None
        except asyncio.TimeoutError:
            logger.warning(
                "Query embedding timed out, using keyword matches only",
                extra={"timeout_seconds": self._config.embedding_timeout_seconds}
            )
            return None
        except ExternalServiceException as e:
            logger.warning(
                "Query embedding failed, using keyword matches only",
                extra={"error": e.message}
            )
            return None

    async def _vector_candidates(
        self,
        query_vector: List[float],
        exclude_ids: List[UUID],
        categories: Optional[List[str]]
    ) -> List[CandidateResult]:
        try:
            with log_latency(logger, "vector_candidates"):
                records = await self._reviews.find_vector_candidates(
                    exclude_ids, categories, self._config.vector_candidate_ceiling
                )
        except RepositoryException as e:
            logger.warning("Embedding candidates unavailable", extra={"error": e.message})
            return []

        mismatched = 0
        results = []
        for record in records:
            if len(record.embedding or []) != len(query_vector):
                mismatched += 1
                continue
            score = similarity_to_score(cosine_similarity(query_vector, record.embedding))
            if score >= self._config.vector_score_floor:
                results.append(CandidateResult(
                    document_id=record.id,
                    score=score,
                    match_type=MatchType.EMBEDDING
                ))

        if mismatched:
            message = (
                f"{mismatched} stored embeddings do not match the query width "
                f"{len(query_vector)}; run a force backfill"
            )
            warnings.warn(message, DataIntegrityWarning, stacklevel=2)
            logger.warning(message, extra={"mismatched": mismatched})

        results.sort(key=lambda c: c.score, reverse=True)
        return results[:self._config.vector_top_n]


class IssueResolutionService:
    """
    Finds unresolved performance issues of agents.

    A low-scoring review is resolved when a later high-scoring review of
    the same agent shares a category with it, or failing that, when the
    two review texts are semantically similar enough. Everything else
    becomes an issue entry with a one-sentence summary.
    """

    def __init__(
        self,
        reviews: IReviewRepository,
        issues: IAgentIssueRepository,
        directory: IAgentDirectory,
        embeddings: EmbeddingService,
        summarizer: ISummarizationProvider,
        config: IssueAnalysisConfig
    ):
        self._reviews = reviews
        self._issues = issues
        self._directory = directory
        self._embeddings = embeddings
        self._summarizer = summarizer
        self._config = config
        self._summary_gate = IntervalRateLimiter(config.summary_delay_seconds)

    async def analyze_issues(self, subject_id: Optional[UUID] = None) -> IssueAnalysisReport:
        """
        Recompute issue lists for one agent, or every active agent.

        Raises:
            ResourceNotFoundException: If ``subject_id`` names no agent
        """
        report = IssueAnalysisReport(started_at=datetime.now(timezone.utc))

        if subject_id is not None:
            agent = await self._directory.get(subject_id)
            if agent is None:
                raise ResourceNotFoundException("Agent", str(subject_id))
            agents = [agent]
        else:
            agents = await self._directory.list_active()

        graded_since = report.started_at - timedelta(days=self._config.window_days)
        logger.info(
            "Issue analysis started",
            extra={"agents": len(agents), "graded_since": graded_since.isoformat()}
        )

        for agent in agents:
            try:
                result = await self._analyze_subject(agent, graded_since)
                await self._reviews.commit()
            except Exception as e:
                await self._reviews.rollback()
                logger.exception(
                    "Issue analysis failed for agent",
                    extra={"subject_id": str(agent.id), "error": str(e)}
                )
                result = SubjectAnalysisResult(subject_id=agent.id, subject_name=agent.name, error=str(e))
            report.results.append(result)

        report.finished_at = datetime.now(timezone.utc)
        logger.info(
            "Issue analysis finished",
            extra={
                "agents": len(report.results),
                "bad": report.total_bad,
                "unresolved": report.total_unresolved,
                "failed_agents": report.failed_subjects,
            }
        )
        return report

    async def _analyze_subject(self, agent: Agent, graded_since: datetime) -> SubjectAnalysisResult:
        result = SubjectAnalysisResult(subject_id=agent.id, subject_name=agent.name)
        threshold = self._config.bad_score_threshold

        reviews = await self._reviews.find_graded_for_subject(agent.id, graded_since)
        bad = [r for r in reviews if r.quality_score < threshold]
        good = [r for r in reviews if r.quality_score >= threshold]
        result.bad_count = len(bad)

        vectors: Dict[UUID, Optional[List[float]]] = {}
        unresolved: List[ReviewRecord] = []
        for review in bad:
            later_good = [g for g in good if g.graded_at > review.graded_at]
            if not later_good:
                unresolved.append(review)
                continue

            if any(g.shares_category_with(review) for g in later_good):
                result.resolved_by_category += 1
                self._log_resolved(review, ResolutionMethod.CATEGORY)
                continue

            if await self._resolved_by_embedding(review, later_good, vectors, result):
                result.resolved_by_embedding += 1
                self._log_resolved(review, ResolutionMethod.EMBEDDING)
            else:
                unresolved.append(review)

        entries = []
        for review in unresolved:
            entries.append(AgentIssueEntry(
                subject_id=agent.id,
                review_id=review.id,
                ticket_number=review.ticket_number,
                category=review.first_category,
                quality_score=review.quality_score,
                graded_at=review.graded_at,
                summary=await self._summarize(review, result),
                feedback_excerpt=normalize_text(review.feedback)[:self._config.feedback_excerpt_chars],
            ))

        await self._issues.replace_for_subject(agent.id, entries)
        await self._directory.mark_analyzed(agent.id, datetime.now(timezone.utc))
        result.unresolved_count = len(entries)

        logger.info(
            "Agent issues analyzed",
            extra={
                "subject_id": str(agent.id),
                "bad": result.bad_count,
                "unresolved": result.unresolved_count,
                "by_category": result.resolved_by_category,
                "by_embedding": result.resolved_by_embedding,
            }
        )
        return result

    def _log_resolved(self, review: ReviewRecord, method: str) -> None:
        logger.debug(
            "Issue resolved by later review",
            extra={"review_id": str(review.id), "method": method}
        )

    async def _resolved_by_embedding(
        self,
        review: ReviewRecord,
        later_good: List[ReviewRecord],
        vectors: Dict[UUID, Optional[List[float]]],
        result: SubjectAnalysisResult
    ) -> bool:
        bad_vector = await self._vector_for(review, vectors, result)
        if not bad_vector:
            return False

        for candidate in later_good:
            good_vector = await self._vector_for(candidate, vectors, result)
            if not good_vector:
                continue
            if cosine_similarity(bad_vector, good_vector) >= self._config.similarity_threshold:
                return True
        return False

    async def _vector_for(
        self,
        record: ReviewRecord,
        vectors: Dict[UUID, Optional[List[float]]],
        result: SubjectAnalysisResult
    ) -> Optional[List[float]]:
        """Stored fresh embedding, or a newly computed and persisted one."""
        if record.id in vectors:
            return vectors[record.id]

        vector = record.embedding if record.has_fresh_embedding else None
        if vector is None:
            try:
                vector = await self._embeddings.embed_record(record)
            except InputException:
                vector = None
            except ExternalServiceException as e:
                result.errors += 1
                logger.warning(
                    "Embedding failed during issue analysis",
                    extra={"review_id": str(record.id), "error": e.message}
                )
                vector = None
            if vector:
                await self._reviews.save_embedding(record.id, vector, self._embeddings.model_name)

        vectors[record.id] = vector
        return vector

    async def _summarize(self, review: ReviewRecord, result: SubjectAnalysisResult) -> str:
        await self._summary_gate.acquire()
        try:
            return await self._summarizer.summarize(review)
        except ExternalServiceException as e:
            result.errors += 1
            logger.warning(
                "Issue summary failed",
                extra={"review_id": str(review.id), "error": e.message}
            )
            return IssueSummaryPromptBuilder.FALLBACK_SUMMARY


class ReviewService:
    """
    Review CRUD plus read models for the HTTP layer.

    Keeps controllers free of repository orchestration.
    """

    def __init__(
        self,
        reviews: IReviewRepository,
        issues: IAgentIssueRepository,
        directory: IAgentDirectory
    ):
        self._reviews = reviews
        self._issues = issues
        self._directory = directory

    async def create_review(self, record: ReviewRecord) -> ReviewRecord:
        if await self._directory.get(record.subject_id) is None:
            raise ResourceNotFoundException("Agent", str(record.subject_id))
        return await self._reviews.create(record)

    async def update_review(self, review_id: UUID, changes: dict) -> ReviewRecord:
        if await self._reviews.get_by_id(review_id) is None:
            raise ResourceNotFoundException("Review", str(review_id))
        return await self._reviews.update(review_id, changes)

    async def get_review(self, review_id: UUID) -> ReviewRecord:
        record = await self._reviews.get_by_id(review_id)
        if record is None:
            raise ResourceNotFoundException("Review", str(review_id))
        return record

    async def embedding_status(self) -> Dict[str, int]:
        return await self._reviews.embedding_status()

    async def list_issues(self, subject_id: UUID) -> Tuple[Agent, List[AgentIssueEntry]]:
        agent = await self._directory.get(subject_id)
        if agent is None:
            raise ResourceNotFoundException("Agent", str(subject_id))
        return agent, await self._issues.list_for_subject(subject_id)

    async def describe_matches(
        self,
        results: List[CandidateResult]
    ) -> List[Tuple[CandidateResult, ReviewRecord, Optional[str]]]:
        """Pair each search result with its review and agent name, keeping rank order."""
        records = {r.id: r for r in await self._reviews.get_many([c.document_id for c in results])}
        names = await self._directory.get_names(list({r.subject_id for r in records.values()}))
        return [
            (candidate, records[candidate.document_id], names.get(records[candidate.document_id].subject_id))
            for candidate in results
            if candidate.document_id in records
        ]
