"""
Review Controllers (API Routes)
===============================

FastAPI routes for reviews, similarity search, embedding maintenance and
agent issue analysis.

Controllers are thin - they delegate to application services.
"""

import time
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.core import ResourceNotFoundException, ValidationException
from src.infrastructure.database import get_session
from src.infrastructure.llm import ILLMClient
from src.review.application import (
    BatchEmbeddingGenerator,
    IssueResolutionService,
    ReviewService,
    SimilarityService,
)
from src.review.application.dto import (
    AgentIssueItem,
    AgentIssuesResponse,
    AnalyzeIssuesRequest,
    AnalyzeIssuesResponse,
    BackfillRequest,
    BackfillResponse,
    EmbeddingStatusResponse,
    ReviewCreateRequest,
    ReviewResponse,
    ReviewUpdateRequest,
    SimilarReviewItem,
    SimilarReviewsRequest,
    SimilarReviewsResponse,
)
from src.review.infrastructure.jobs import (
    build_backfill_generator,
    build_issue_resolution_service,
    build_review_service,
    build_similarity_service,
)
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)
reviews_router = APIRouter(prefix="/reviews", tags=["Reviews"])
issues_router = APIRouter(prefix="/agents", tags=["Agent Issues"])

NO_MATCHES_MESSAGE = "No similar reviews found"


# ========== Example payloads for Swagger ==========

SIMILAR_RESPONSE_EXAMPLE = {
    "results": [
        {
            "document_id": "123e4567-e89b-12d3-a456-426614174000",
            "ticket_number": "48213",
            "score": 60,
            "match_type": "keyword",
            "matched_keywords": ["close", "ovao", "tiket"],
            "agent_name": "Marko Petrović",
            "notes": "close-ovao tiket nakon rg-a",
            "feedback": "Ticket closed before the customer confirmed the fix.",
            "quality_score": 72.0,
            "categories": ["Ticket handling"],
            "graded_at": "2024-01-15T10:00:00Z"
        }
    ],
    "total": 1,
    "message": None
}


# ========== Dependencies ==========

def get_llm_client(request: Request) -> ILLMClient:
    """LLM client created once at startup."""
    return request.app.state.llm_client


async def get_review_service(
    session: AsyncSession = Depends(get_session)
) -> ReviewService:
    """Get review service instance."""
    return build_review_service(session)


async def get_similarity_service(
    session: AsyncSession = Depends(get_session),
    llm_client: ILLMClient = Depends(get_llm_client)
) -> SimilarityService:
    """Get similarity search service instance."""
    return build_similarity_service(session, llm_client)


async def get_backfill_generator(
    session: AsyncSession = Depends(get_session),
    llm_client: ILLMClient = Depends(get_llm_client)
) -> BatchEmbeddingGenerator:
    """Get embedding backfill service instance."""
    return build_backfill_generator(session, llm_client)


async def get_issue_service(
    session: AsyncSession = Depends(get_session),
    llm_client: ILLMClient = Depends(get_llm_client)
) -> IssueResolutionService:
    """Get issue resolution service instance."""
    return build_issue_resolution_service(session, llm_client)


def _not_found(e: ResourceNotFoundException) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)


def _unprocessable(e: ValidationException) -> HTTPException:
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.message)


# ========== Review Routes ==========

@reviews_router.post(
    "",
    response_model=ReviewResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a review",
    description="""
    Store a ticket or conversation review.

    New reviews have no embedding yet and start with `embedding_stale = true`;
    the next `fresh-missing` backfill picks them up.
    """
)
async def create_review(
    request: ReviewCreateRequest,
    service: ReviewService = Depends(get_review_service)
):
    try:
        record = await service.create_review(request.to_domain())
    except ResourceNotFoundException as e:
        raise _not_found(e)

    logger.info("Review created", extra={"review_id": str(record.id), "kind": record.kind})
    return ReviewResponse.from_domain(record)


@reviews_router.patch(
    "/{review_id}",
    response_model=ReviewResponse,
    summary="Edit a review",
    description="""
    Update review fields. Changing notes, feedback, short description or
    transcript marks the stored embedding stale.
    """,
    responses={404: {"description": "Review not found"}}
)
async def update_review(
    review_id: UUID,
    request: ReviewUpdateRequest,
    service: ReviewService = Depends(get_review_service)
):
    try:
        record = await service.update_review(review_id, request.to_changes())
    except ResourceNotFoundException as e:
        raise _not_found(e)
    except ValidationException as e:
        raise _unprocessable(e)

    return ReviewResponse.from_domain(record)


@reviews_router.post(
    "/similar",
    response_model=SimilarReviewsResponse,
    summary="Find similar past reviews",
    description="""
    Hybrid search over graded reviews.

    Keyword matches on the notes come first; the embedding search then
    covers reviews the keywords missed. If the embedding provider is slow
    or unavailable, keyword matches are returned alone.
    """,
    responses={
        200: {
            "description": "Ranked similar reviews",
            "content": {"application/json": {"example": SIMILAR_RESPONSE_EXAMPLE}}
        }
    }
)
async def find_similar_reviews(
    request: SimilarReviewsRequest,
    similarity_service: SimilarityService = Depends(get_similarity_service),
    review_service: ReviewService = Depends(get_review_service)
):
    results = await similarity_service.find_similar(
        request.query_text,
        exclude_id=request.exclude_id,
        limit=request.limit,
        categories=request.categories or None
    )
    matches = await review_service.describe_matches(results)
    items = [SimilarReviewItem.from_match(c, record, name) for c, record, name in matches]

    return SimilarReviewsResponse(
        results=items,
        total=len(items),
        message=None if items else NO_MATCHES_MESSAGE
    )


@reviews_router.post(
    "/embeddings/backfill",
    response_model=BackfillResponse,
    summary="Backfill review embeddings",
    description="""
    Compute embeddings for graded reviews.

    **Modes**:
    - `fresh-missing`: only reviews without an embedding or with a stale one
    - `force`: every eligible review (after a model change)
    """
)
async def backfill_embeddings(
    request: BackfillRequest,
    generator: BatchEmbeddingGenerator = Depends(get_backfill_generator)
):
    start_time = time.perf_counter()

    stats = await generator.backfill_embeddings(
        request.mode,
        graded_since=request.graded_since,
        graded_until=request.graded_until,
        max_records=request.max_records
    )

    return BackfillResponse(
        mode=request.mode,
        processing_time_ms=int((time.perf_counter() - start_time) * 1000),
        **stats.as_dict()
    )


@reviews_router.get(
    "/embeddings/status",
    response_model=EmbeddingStatusResponse,
    summary="Embedding coverage"
)
async def embedding_status(
    service: ReviewService = Depends(get_review_service)
):
    return EmbeddingStatusResponse(**(await service.embedding_status()))


# ========== Agent Issue Routes ==========

@issues_router.post(
    "/issues/analyze",
    response_model=AnalyzeIssuesResponse,
    summary="Recompute unresolved agent issues",
    description="""
    Run the issue analysis for one agent (`subject_id`) or all active agents.

    Each agent's issue list is replaced, not merged. Failures for one agent
    are reported in its result and do not stop the others.
    """,
    responses={404: {"description": "Agent not found"}}
)
async def analyze_issues(
    request: AnalyzeIssuesRequest,
    service: IssueResolutionService = Depends(get_issue_service)
):
    try:
        report = await service.analyze_issues(request.subject_id)
    except ResourceNotFoundException as e:
        raise _not_found(e)

    return AnalyzeIssuesResponse.from_domain(report)


@issues_router.get(
    "/{subject_id}/issues",
    response_model=AgentIssuesResponse,
    summary="Current unresolved issues of an agent",
    responses={404: {"description": "Agent not found"}}
)
async def list_agent_issues(
    subject_id: UUID,
    service: ReviewService = Depends(get_review_service)
):
    try:
        agent, entries = await service.list_issues(subject_id)
    except ResourceNotFoundException as e:
        raise _not_found(e)

    return AgentIssuesResponse(
        subject_id=agent.id,
        subject_name=agent.name,
        issues_last_analyzed=agent.issues_last_analyzed,
        total=len(entries),
        issues=[AgentIssueItem.from_domain(entry) for entry in entries]
    )
