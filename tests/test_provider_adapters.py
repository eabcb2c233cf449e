"""Tests for the LLM clients and the provider adapters built on them."""

from typing import List
from uuid import uuid4

import pytest

from src.config import Settings
from src.core import ConfigurationException, LLMException
from src.infrastructure.llm import (
    ChatCompletionResult,
    EmbeddingResult,
    ILLMClient,
    MockLLMClient,
    OpenAILLMClient,
    UnavailableLLMClient,
    create_llm_client,
)
from src.review.domain import EmbeddingConfig, IssueAnalysisConfig, ReviewRecord, TicketReviewContent
from src.review.infrastructure import EmbeddingProviderAdapter, SummarizationProviderAdapter


class RecordingClient(ILLMClient):
    """Returns fixed responses and remembers what it was asked."""

    def __init__(self, embedding: List[float], reply: str = "Skipped identity check."):
        self.embedding = embedding
        self.reply = reply
        self.embedded: List[str] = []
        self.chats: List[dict] = []

    async def generate_embedding(self, text: str) -> EmbeddingResult:
        self.embedded.append(text)
        return EmbeddingResult(embedding=self.embedding, model="recording")

    async def chat_completion(self, messages, temperature=0.3, max_tokens=100, operation="chat_completion"):
        self.chats.append({
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "operation": operation,
        })
        return ChatCompletionResult(
            content=self.reply, model="recording", prompt_tokens=0, completion_tokens=0, latency_ms=0
        )


class TestMockLLMClient:
    @pytest.mark.asyncio
    async def test_embeddings_are_deterministic(self):
        client = MockLLMClient(dimension=16)

        first = await client.generate_embedding("Closed ticket early")
        second = await client.generate_embedding("Closed ticket early")
        other = await client.generate_embedding("Friendly greeting")

        assert first.embedding == second.embedding
        assert first.embedding != other.embedding
        assert len(first.embedding) == 16

    @pytest.mark.asyncio
    async def test_chat_returns_sentence(self):
        result = await MockLLMClient(dimension=8).chat_completion([{"role": "user", "content": "hi"}])
        assert result.content


class TestClientFactory:
    def test_mock_provider(self):
        client = create_llm_client(Settings(llm_provider="mock", embedding_dimension=32))
        assert isinstance(client, MockLLMClient)

    def test_openai_without_key_is_configuration_error(self):
        with pytest.raises(ConfigurationException):
            OpenAILLMClient(config=Settings(llm_provider="openai", openai_api_key=None))

    @pytest.mark.asyncio
    async def test_unavailable_client_always_fails(self):
        client = UnavailableLLMClient("no key")
        with pytest.raises(LLMException):
            await client.generate_embedding("Closed ticket early")
        with pytest.raises(LLMException):
            await client.chat_completion([])


class TestProviderDefaults:
    def test_zai_gets_its_own_models(self):
        config = Settings(llm_provider="zai")
        assert config.llm_model == "glm-4.7"
        assert config.embedding_model == "embedding-2"
        assert config.embedding_dimension == 1024

    def test_openai_defaults(self):
        config = Settings(llm_provider="openai")
        assert config.llm_model == "gpt-4o-mini"
        assert config.embedding_model == "text-embedding-3-small"
        assert config.embedding_dimension == 1536

    def test_explicit_values_win(self):
        config = Settings(llm_provider="ZAI", embedding_model="embedding-3", embedding_dimension=2048)
        assert config.llm_model == "glm-4.7"
        assert config.embedding_model == "embedding-3"
        assert config.embedding_dimension == 2048


class TestEmbeddingProviderAdapter:
    def config(self, **overrides):
        values = dict(model="recording", dimension=4, max_input_chars=20)
        values.update(overrides)
        return EmbeddingConfig(**values)

    @pytest.mark.asyncio
    async def test_truncates_input(self):
        client = RecordingClient([0.1, 0.2, 0.3, 0.4])
        adapter = EmbeddingProviderAdapter(client, self.config())

        vector = await adapter.embed("a" * 50)

        assert vector == [0.1, 0.2, 0.3, 0.4]
        assert client.embedded == ["a" * 20]

    @pytest.mark.asyncio
    async def test_blank_text_not_sent(self):
        client = RecordingClient([0.1, 0.2, 0.3, 0.4])
        adapter = EmbeddingProviderAdapter(client, self.config())

        assert await adapter.embed("   ") is None
        assert client.embedded == []

    @pytest.mark.asyncio
    async def test_wrong_dimension_rejected(self):
        adapter = EmbeddingProviderAdapter(RecordingClient([0.1, 0.2]), self.config())
        with pytest.raises(LLMException):
            await adapter.embed("Closed ticket early")

    @pytest.mark.asyncio
    async def test_empty_vector_rejected(self):
        adapter = EmbeddingProviderAdapter(RecordingClient([]), self.config())
        with pytest.raises(LLMException):
            await adapter.embed("Closed ticket early")

    @pytest.mark.asyncio
    async def test_model_name_follows_provider(self):
        adapter = EmbeddingProviderAdapter(
            RecordingClient([0.1, 0.2, 0.3, 0.4]), self.config(model="text-embedding-3-small")
        )
        assert adapter.model_name == "text-embedding-3-small"

        await adapter.embed("Closed ticket early")

        assert adapter.model_name == "recording"


class TestSummarizationProviderAdapter:
    @pytest.mark.asyncio
    async def test_prompt_and_cleanup(self):
        client = RecordingClient([], reply='"Refunded without verifying identity."\n')
        adapter = SummarizationProviderAdapter(client, IssueAnalysisConfig(summary_max_tokens=60, temperature=0.1))
        record = ReviewRecord(
            id=uuid4(),
            subject_id=uuid4(),
            ticket_number="1",
            content=TicketReviewContent(notes="No ID check", feedback="Verify first"),
            categories=["Security"],
        )

        summary = await adapter.summarize(record)

        assert summary == "Refunded without verifying identity."
        [call] = client.chats
        assert call["max_tokens"] == 60
        assert call["temperature"] == 0.1
        assert call["operation"] == "issue_summary"
        assert "Notes: No ID check" in call["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_empty_reply_becomes_fallback(self):
        adapter = SummarizationProviderAdapter(RecordingClient([], reply=""), IssueAnalysisConfig())
        record = ReviewRecord(id=uuid4(), subject_id=uuid4(), ticket_number=None, content=TicketReviewContent())

        assert await adapter.summarize(record) == "Issue details unavailable"
