"""Tests for the embedding backfill job."""

import pytest

from src.config import EmbeddingMode
from src.core import InputException, ValidationException

from tests.conftest import days_ago


class TestEmbeddingService:
    def test_short_text_rejected_before_provider(self, embedding_service, fake_embeddings):
        with pytest.raises(InputException) as exc_info:
            embedding_service.ensure_embeddable("too short")
        assert exc_info.value.details["minimum"] == 10
        assert fake_embeddings.calls == []

    def test_markup_does_not_count_towards_length(self, embedding_service):
        with pytest.raises(InputException):
            embedding_service.ensure_embeddable("<p>short</p>")

    @pytest.mark.asyncio
    async def test_embeds_normalized_text(self, embedding_service, fake_embeddings):
        vector = await embedding_service.embed_text("<p>Closed   ticket early</p>")
        assert vector
        assert fake_embeddings.calls == ["Closed ticket early"]


class TestBatchEmbeddingGenerator:
    @pytest.mark.asyncio
    async def test_fresh_missing_is_idempotent(self, make_agent, make_review, backfill_generator, fake_embeddings):
        agent_id = await make_agent()
        for i in range(5):
            await make_review(agent_id, notes=f"Review number {i} closed early")

        first = await backfill_generator.backfill_embeddings(EmbeddingMode.FRESH_MISSING)
        assert first.as_dict() == {"total": 5, "processed": 5, "skipped": 0, "errors": 0}

        second = await backfill_generator.backfill_embeddings(EmbeddingMode.FRESH_MISSING)
        assert second.as_dict() == {"total": 0, "processed": 0, "skipped": 0, "errors": 0}
        assert len(fake_embeddings.calls) == 5

    @pytest.mark.asyncio
    async def test_force_recomputes_everything(self, make_agent, make_review, backfill_generator, fake_embeddings):
        agent_id = await make_agent()
        for i in range(4):
            await make_review(agent_id, notes=f"Review number {i} closed early")

        await backfill_generator.backfill_embeddings(EmbeddingMode.FRESH_MISSING)
        forced = await backfill_generator.backfill_embeddings(EmbeddingMode.FORCE)

        assert forced.processed == 4
        assert len(fake_embeddings.calls) == 8

    @pytest.mark.asyncio
    async def test_edited_review_is_picked_up_again(self, make_agent, make_review, review_repo, backfill_generator):
        agent_id = await make_agent()
        review = await make_review(agent_id, notes="Closed ticket early")
        await make_review(agent_id, notes="Another closed ticket")
        await backfill_generator.backfill_embeddings()

        await review_repo.update(review.id, {"feedback": "Wait for customer confirmation"})
        stats = await backfill_generator.backfill_embeddings()

        assert stats.total == 1
        assert stats.processed == 1
        stored = await review_repo.get_by_id(review.id, with_embedding=True)
        assert stored.has_fresh_embedding

    @pytest.mark.asyncio
    async def test_short_text_is_skipped(self, make_agent, make_review, review_repo, backfill_generator, fake_embeddings):
        agent_id = await make_agent()
        short = await make_review(agent_id, notes="ok")
        await make_review(agent_id, notes="Closed ticket early")

        stats = await backfill_generator.backfill_embeddings()

        assert stats.as_dict() == {"total": 2, "processed": 1, "skipped": 1, "errors": 0}
        assert fake_embeddings.calls == ["Closed ticket early"]
        stored = await review_repo.get_by_id(short.id, with_embedding=True)
        assert stored.embedding is None

    @pytest.mark.asyncio
    async def test_provider_errors_counted_and_left_for_retry(
        self, make_agent, make_review, review_repo, backfill_generator, fake_embeddings
    ):
        agent_id = await make_agent()
        failing = await make_review(agent_id, notes="Rejected by the provider")
        for i in range(3):
            await make_review(agent_id, notes=f"Review number {i} closed early")
        fake_embeddings.fail_on = ["Rejected"]

        stats = await backfill_generator.backfill_embeddings()
        assert stats.as_dict() == {"total": 4, "processed": 3, "skipped": 0, "errors": 1}

        stored = await review_repo.get_by_id(failing.id, with_embedding=True)
        assert stored.embedding is None
        assert stored.embedding_stale is True

        fake_embeddings.fail_on = []
        retry = await backfill_generator.backfill_embeddings()
        assert retry.processed == 1

    @pytest.mark.asyncio
    async def test_batches_bound_concurrency(self, make_agent, make_review, backfill_generator, fake_embeddings):
        agent_id = await make_agent()
        for i in range(7):
            await make_review(agent_id, notes=f"Review number {i} closed early")
        fake_embeddings.delay = 0.01

        stats = await backfill_generator.backfill_embeddings()

        assert stats.processed == 7
        assert fake_embeddings.max_in_flight == 3

    @pytest.mark.asyncio
    async def test_window_and_max_records(self, make_agent, make_review, backfill_generator):
        agent_id = await make_agent()
        await make_review(agent_id, notes="Old review outside window", graded_at=days_ago(40))
        for i in range(3):
            await make_review(agent_id, notes=f"Recent review number {i}", graded_at=days_ago(5 - i))

        stats = await backfill_generator.backfill_embeddings(graded_since=days_ago(10), max_records=2)
        assert stats.total == 2
        assert stats.processed == 2

    @pytest.mark.asyncio
    async def test_ungraded_reviews_never_embedded(self, make_agent, make_review, backfill_generator, fake_embeddings):
        agent_id = await make_agent()
        await make_review(agent_id, notes="Draft review still being written", score=None)

        stats = await backfill_generator.backfill_embeddings(EmbeddingMode.FORCE)
        assert stats.total == 0
        assert fake_embeddings.calls == []

    @pytest.mark.asyncio
    async def test_invalid_mode(self, backfill_generator):
        with pytest.raises(ValidationException):
            await backfill_generator.backfill_embeddings("everything")
