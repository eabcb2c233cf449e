"""
Tests for the hybrid similarity search.

Keyword matches come from review notes; embedding matches only from
reviews the keyword pass did not return.
"""

from uuid import uuid4

import pytest

from src.config import MatchType
from src.core import DataIntegrityWarning
from src.review.application import SimilarityService, fuse_candidates
from src.review.domain import CandidateResult, RetrievalConfig

from tests.conftest import unit, with_cosine

SCENARIO_QUERY = "close-ovao tiket nakon rg1 macro-a"


@pytest.fixture
def make_review(make_review):
    """Searchable reviews carry feedback unless a test says otherwise."""
    async def _make(subject_id, **kwargs):
        kwargs.setdefault("feedback", "Confirm the fix with the customer before closing.")
        return await make_review(subject_id, **kwargs)
    return _make


class TestKeywordPath:
    @pytest.mark.asyncio
    async def test_mixed_language_notes_found_by_keywords(self, make_agent, make_review, similarity_service):
        agent_id = await make_agent()
        target = await make_review(agent_id, notes="close-ovao tiket nakon rg-a")
        await make_review(agent_id, notes="Customer was greeted politely")

        results = await similarity_service.find_similar(SCENARIO_QUERY)

        assert len(results) == 1
        assert results[0].document_id == target.id
        assert results[0].match_type == MatchType.KEYWORD
        assert results[0].score == 60
        assert results[0].matched_keywords == ["close", "ovao", "tiket"]

    @pytest.mark.asyncio
    async def test_below_floor_dropped(self, make_agent, make_review, similarity_service):
        agent_id = await make_agent()
        await make_review(agent_id, notes="macro was fine")

        query = "refund escalation supervisor approval missing wrong macro"
        results = await similarity_service.find_similar(query)
        # 1 of 7 keywords = 14 < 20
        assert results == []

    @pytest.mark.asyncio
    async def test_excluded_review_never_returned(
        self, make_agent, make_review, review_repo, similarity_service, fake_embeddings
    ):
        agent_id = await make_agent()
        current = await make_review(agent_id, notes="close-ovao tiket nakon rg-a")
        await review_repo.save_embedding(current.id, unit(0), "fake-embedding")
        fake_embeddings.vectors = {"close-ovao": unit(0)}

        results = await similarity_service.find_similar(SCENARIO_QUERY, exclude_id=current.id)
        assert current.id not in [r.document_id for r in results]

    @pytest.mark.asyncio
    async def test_ungraded_reviews_not_searched(self, make_agent, make_review, similarity_service):
        agent_id = await make_agent()
        await make_review(agent_id, notes="close-ovao tiket nakon rg-a", score=None)

        assert await similarity_service.find_similar(SCENARIO_QUERY) == []

    @pytest.mark.asyncio
    async def test_limit_and_ordering(self, make_agent, make_review, similarity_service):
        agent_id = await make_agent()
        await make_review(agent_id, notes="close-ovao tiket")
        best = await make_review(agent_id, notes="close-ovao tiket nakon rg1 uz macro")
        await make_review(agent_id, notes="tiket ostao otvoren")

        results = await similarity_service.find_similar(SCENARIO_QUERY, limit=2)

        assert len(results) == 2
        assert results[0].document_id == best.id
        assert results[0].score == 100
        assert results[0].score >= results[1].score

    @pytest.mark.asyncio
    async def test_category_filter(self, make_agent, make_review, similarity_service):
        agent_id = await make_agent()
        await make_review(agent_id, notes="close-ovao tiket nakon rg-a", categories=["Tone"])
        process = await make_review(agent_id, notes="close-ovao tiket bez potvrde", categories=["Process"])

        results = await similarity_service.find_similar(SCENARIO_QUERY, categories=["Process"])
        assert [r.document_id for r in results] == [process.id]

    @pytest.mark.asyncio
    async def test_reviews_without_feedback_not_returned(self, make_agent, make_review, similarity_service):
        agent_id = await make_agent()
        await make_review(agent_id, notes="close-ovao tiket nakon rg1 macro-a", feedback="")
        with_feedback = await make_review(agent_id, notes="close-ovao tiket nakon rg-a")

        results = await similarity_service.find_similar(SCENARIO_QUERY)

        assert [r.document_id for r in results] == [with_feedback.id]


class TestEmbeddingPath:
    @pytest.mark.asyncio
    async def test_semantic_match_without_shared_words(
        self, make_agent, make_review, review_repo, similarity_service, fake_embeddings
    ):
        agent_id = await make_agent()
        review = await make_review(agent_id, notes="Customer never received the promised callback")
        await review_repo.save_embedding(review.id, unit(0), "fake-embedding")
        fake_embeddings.vectors = {"zaboravio": with_cosine(0.9)}

        results = await similarity_service.find_similar("Agent zaboravio da pozove korisnika")

        assert len(results) == 1
        assert results[0].document_id == review.id
        assert results[0].match_type == MatchType.EMBEDDING
        assert results[0].score == 90
        assert results[0].matched_keywords == []

    @pytest.mark.asyncio
    async def test_keyword_hit_not_repeated_as_embedding_hit(
        self, make_agent, make_review, review_repo, similarity_service, fake_embeddings
    ):
        agent_id = await make_agent()
        both = await make_review(agent_id, notes="close-ovao tiket nakon rg-a")
        semantic = await make_review(agent_id, notes="Resolved ticket prematurely")
        await review_repo.save_embedding(both.id, unit(0), "fake-embedding")
        await review_repo.save_embedding(semantic.id, with_cosine(0.8), "fake-embedding")
        fake_embeddings.vectors = {"close-ovao": unit(0)}

        results = await similarity_service.find_similar(SCENARIO_QUERY)

        ids = [r.document_id for r in results]
        assert len(ids) == len(set(ids)) == 2
        by_id = {r.document_id: r for r in results}
        assert by_id[both.id].match_type == MatchType.KEYWORD
        assert by_id[semantic.id].match_type == MatchType.EMBEDDING
        assert results[0].document_id == semantic.id

    @pytest.mark.asyncio
    async def test_below_vector_floor_dropped(
        self, make_agent, make_review, review_repo, similarity_service, fake_embeddings
    ):
        agent_id = await make_agent()
        review = await make_review(agent_id, notes="Unrelated review text")
        await review_repo.save_embedding(review.id, with_cosine(0.2), "fake-embedding")
        fake_embeddings.vectors = {"zaboravio": unit(0)}

        assert await similarity_service.find_similar("Agent zaboravio da pozove korisnika") == []

    @pytest.mark.asyncio
    async def test_reviews_without_feedback_not_matched_semantically(
        self, make_agent, make_review, review_repo, similarity_service, fake_embeddings
    ):
        agent_id = await make_agent()
        review = await make_review(agent_id, notes="Customer never received the promised callback", feedback="")
        await review_repo.save_embedding(review.id, unit(0), "fake-embedding")
        fake_embeddings.vectors = {"zaboravio": unit(0)}

        assert await similarity_service.find_similar("Agent zaboravio da pozove korisnika") == []

    @pytest.mark.asyncio
    async def test_stale_embeddings_not_searched(
        self, make_agent, make_review, review_repo, similarity_service, fake_embeddings
    ):
        agent_id = await make_agent()
        review = await make_review(agent_id, notes="Customer never received the promised callback")
        await review_repo.save_embedding(review.id, unit(0), "fake-embedding")
        await review_repo.update(review.id, {"feedback": "Edited after embedding"})
        fake_embeddings.vectors = {"zaboravio": unit(0)}

        assert await similarity_service.find_similar("Agent zaboravio da pozove korisnika") == []

    @pytest.mark.asyncio
    async def test_width_mismatch_warns_and_skips(
        self, make_agent, make_review, review_repo, similarity_service, fake_embeddings
    ):
        agent_id = await make_agent()
        old_model = await make_review(agent_id, notes="Embedded with an older model")
        current = await make_review(agent_id, notes="Embedded with the current model")
        await review_repo.save_embedding(old_model.id, [1.0] * 32, "old-embedding")
        await review_repo.save_embedding(current.id, unit(0), "fake-embedding")
        fake_embeddings.vectors = {"zaboravio": unit(0)}

        with pytest.warns(DataIntegrityWarning):
            results = await similarity_service.find_similar("Agent zaboravio da pozove korisnika")

        assert [r.document_id for r in results] == [current.id]


class TestDegradation:
    @pytest.mark.asyncio
    async def test_provider_failure_returns_keyword_results(
        self, make_agent, make_review, review_repo, similarity_service, fake_embeddings
    ):
        agent_id = await make_agent()
        keyword = await make_review(agent_id, notes="close-ovao tiket nakon rg-a")
        semantic = await make_review(agent_id, notes="Resolved ticket prematurely")
        await review_repo.save_embedding(semantic.id, unit(0), "fake-embedding")
        fake_embeddings.fail_all = True

        results = await similarity_service.find_similar(SCENARIO_QUERY)

        assert [r.document_id for r in results] == [keyword.id]
        assert len(fake_embeddings.calls) == 1

    @pytest.mark.asyncio
    async def test_provider_timeout_returns_keyword_results(
        self, make_agent, make_review, review_repo, embedding_service, fake_embeddings
    ):
        agent_id = await make_agent()
        keyword = await make_review(agent_id, notes="close-ovao tiket nakon rg-a")
        fake_embeddings.delay = 5.0
        service = SimilarityService(review_repo, embedding_service, RetrievalConfig(embedding_timeout_seconds=0.05))

        results = await service.find_similar(SCENARIO_QUERY)

        assert [r.document_id for r in results] == [keyword.id]

    @pytest.mark.asyncio
    async def test_short_query_skips_provider(self, make_agent, make_review, similarity_service, fake_embeddings):
        agent_id = await make_agent()
        hit = await make_review(agent_id, notes="Wrong rg1 macro used")

        results = await similarity_service.find_similar("rg1 macro")

        assert fake_embeddings.calls == []
        assert [r.document_id for r in results] == [hit.id]

    @pytest.mark.asyncio
    async def test_empty_query(self, similarity_service, fake_embeddings):
        assert await similarity_service.find_similar("") == []
        assert await similarity_service.find_similar(None) == []
        assert fake_embeddings.calls == []


class TestFuseCandidates:
    def test_higher_score_wins_per_document(self):
        doc = uuid4()
        keyword = CandidateResult(doc, 40, MatchType.KEYWORD, ["refund"])
        vector = CandidateResult(doc, 70, MatchType.EMBEDDING)

        fused = fuse_candidates([keyword], [vector], 10)
        assert fused == [vector]

    def test_sorted_and_limited(self):
        candidates = [CandidateResult(uuid4(), score, MatchType.KEYWORD) for score in (30, 90, 60)]

        fused = fuse_candidates(candidates, [], 2)
        assert [c.score for c in fused] == [90, 60]

    def test_ties_keep_keyword_first(self):
        keyword = CandidateResult(uuid4(), 50, MatchType.KEYWORD)
        vector = CandidateResult(uuid4(), 50, MatchType.EMBEDDING)

        assert fuse_candidates([keyword], [vector], 10) == [keyword, vector]
