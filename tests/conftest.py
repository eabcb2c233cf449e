"""
Shared test fixtures.

Every test gets its own in-memory SQLite database and fake providers:
    FakeEmbeddingProvider     maps text fragments to chosen vectors, records calls
    FakeSummarizationProvider returns canned summaries, optional failure mode
"""

import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LLM_PROVIDER", "mock")
os.environ.setdefault("ISSUE_ANALYSIS_ENABLED", "false")

import asyncio
import hashlib
import math
import random
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence
from uuid import UUID, uuid4

import pytest

from src.core import LLMException
from src.infrastructure.database import Base, build_engine, create_session_maker
from src.review.application import (
    BatchEmbeddingGenerator,
    EmbeddingService,
    IEmbeddingProvider,
    ISummarizationProvider,
    IssueResolutionService,
    SimilarityService,
)
from src.review.domain import (
    ConversationReviewContent,
    EmbeddingConfig,
    IssueAnalysisConfig,
    RetrievalConfig,
    ReviewRecord,
    TicketReviewContent,
)
from src.review.infrastructure import (
    SQLAlchemyAgentDirectory,
    SQLAlchemyAgentIssueRepository,
    SQLAlchemyReviewRepository,
)
from src.review.infrastructure.models import AgentModel

DIMENSION = 64


# ========== Vector helpers ==========

def unit(index: int, dimension: int = DIMENSION) -> List[float]:
    vector = [0.0] * dimension
    vector[index] = 1.0
    return vector


def with_cosine(cosine: float, dimension: int = DIMENSION) -> List[float]:
    """Unit vector whose cosine with ``unit(0)`` is exactly ``cosine``."""
    vector = [0.0] * dimension
    vector[0] = cosine
    vector[1] = math.sqrt(1 - cosine ** 2)
    return vector


def pseudo_random(text: str, dimension: int = DIMENSION) -> List[float]:
    seed = int(hashlib.sha256(text.encode("utf-8")).hexdigest()[:8], 16)
    rng = random.Random(seed)
    return [rng.gauss(0, 1) for _ in range(dimension)]


def days_ago(days: float) -> datetime:
    return datetime.now(timezone.utc) - timedelta(days=days)


# ========== Fake providers ==========

class FakeEmbeddingProvider(IEmbeddingProvider):
    """
    Embedding provider double.

    Texts containing a key of ``vectors`` get that vector; anything else
    gets a deterministic pseudo-random vector (nearly orthogonal to the rest).
    """

    def __init__(
        self,
        vectors: Optional[Dict[str, List[float]]] = None,
        fail_on: Sequence[str] = (),
        delay: float = 0.0
    ):
        self.vectors = dict(vectors or {})
        self.fail_on = list(fail_on)
        self.fail_all = False
        self.delay = delay
        self.calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    @property
    def model_name(self) -> str:
        return "fake-embedding"

    async def embed(self, text: str) -> Optional[List[float]]:
        self.calls.append(text)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail_all or any(marker in text for marker in self.fail_on):
                raise LLMException("provider rejected the request")
            for key, vector in self.vectors.items():
                if key in text:
                    return list(vector)
            return pseudo_random(text)
        finally:
            self.in_flight -= 1


class FakeSummarizationProvider(ISummarizationProvider):
    def __init__(self, summary: str = "Closed the ticket without confirming the fix."):
        self.summary = summary
        self.fail = False
        self.calls: List[UUID] = []

    async def summarize(self, record: ReviewRecord) -> str:
        self.calls.append(record.id)
        if self.fail:
            raise LLMException("summary model unavailable")
        return self.summary


# ========== Database ==========

@pytest.fixture
async def engine():
    import src.review.infrastructure.models  # noqa: F401

    engine = build_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def session(engine):
    session_maker = create_session_maker(engine)
    async with session_maker() as session:
        yield session


@pytest.fixture
def review_repo(session):
    return SQLAlchemyReviewRepository(session)


@pytest.fixture
def issue_repo(session):
    return SQLAlchemyAgentIssueRepository(session)


@pytest.fixture
def directory(session):
    return SQLAlchemyAgentDirectory(session)


# ========== Factories ==========

@pytest.fixture
def make_agent(session):
    async def _make(name: str = "Marko Petrović", is_removed: bool = False) -> UUID:
        agent = AgentModel(id=uuid4(), name=name, team="Tier 1", is_removed=is_removed)
        session.add(agent)
        await session.flush()
        return agent.id
    return _make


@pytest.fixture
def make_review(review_repo):
    async def _make(
        subject_id: UUID,
        notes: str = "",
        feedback: str = "",
        score: Optional[float] = 80.0,
        categories: Sequence[str] = (),
        graded_at: Optional[datetime] = None,
        transcript: Optional[str] = None,
        ticket_number: Optional[str] = None
    ) -> ReviewRecord:
        if transcript is not None:
            content = ConversationReviewContent(notes=notes, feedback=feedback, transcript=transcript)
        else:
            content = TicketReviewContent(notes=notes, feedback=feedback)
        return await review_repo.create(ReviewRecord(
            id=None,
            subject_id=subject_id,
            ticket_number=ticket_number or str(random.randint(10000, 99999)),
            content=content,
            quality_score=score,
            categories=list(categories),
            graded_at=graded_at if graded_at is not None or score is None else days_ago(1),
        ))
    return _make


# ========== Services ==========

@pytest.fixture
def embedding_config():
    return EmbeddingConfig(
        model="fake-embedding",
        dimension=DIMENSION,
        max_input_chars=8000,
        min_text_length=10,
        batch_size=3,
        batch_delay_seconds=0.0,
    )


@pytest.fixture
def retrieval_config():
    return RetrievalConfig(embedding_timeout_seconds=0.5)


@pytest.fixture
def analysis_config():
    return IssueAnalysisConfig(summary_delay_seconds=0.0)


@pytest.fixture
def fake_embeddings():
    return FakeEmbeddingProvider()


@pytest.fixture
def fake_summarizer():
    return FakeSummarizationProvider()


@pytest.fixture
def embedding_service(fake_embeddings, embedding_config):
    return EmbeddingService(fake_embeddings, embedding_config)


@pytest.fixture
def backfill_generator(review_repo, embedding_service, embedding_config):
    return BatchEmbeddingGenerator(review_repo, embedding_service, embedding_config)


@pytest.fixture
def similarity_service(review_repo, embedding_service, retrieval_config):
    return SimilarityService(review_repo, embedding_service, retrieval_config)


@pytest.fixture
def issue_service(review_repo, issue_repo, directory, embedding_service, fake_summarizer, analysis_config):
    return IssueResolutionService(
        review_repo, issue_repo, directory, embedding_service, fake_summarizer, analysis_config
    )
