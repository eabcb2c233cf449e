"""
LLM Client Infrastructure
==========================

Wrapper for LLM providers (OpenAI, Z.AI) providing a clean interface for
the two operations the review service needs: text embeddings and short
chat completions (issue summaries).

This module abstracts the LLM client implementation following the
Dependency Inversion Principle - the application layer depends on
abstractions, not concrete implementations.
"""

import asyncio
import hashlib
import random
import time
from abc import ABC, abstractmethod
from typing import List, Optional

import openai
from openai import AsyncOpenAI
from zai import ZaiClient

from src.config import Settings, LLMProvider, settings as default_settings
from src.core import LLMException, ConfigurationException
from src.shared.infrastructure.grafana import get_grafana_exporter


class EmbeddingResult:
    """Result of an embedding generation."""

    def __init__(self, embedding: List[float], model: str, latency_ms: int = 0):
        self.embedding = embedding
        self.model = model
        self.dimension = len(embedding)
        self.latency_ms = latency_ms


class ChatCompletionResult:
    """Result of a chat completion."""

    def __init__(
        self,
        content: str,
        model: str,
        prompt_tokens: int,
        completion_tokens: int,
        latency_ms: int
    ):
        self.content = content
        self.model = model
        self.prompt_tokens = prompt_tokens
        self.completion_tokens = completion_tokens
        self.total_tokens = prompt_tokens + completion_tokens
        self.latency_ms = latency_ms


class ILLMClient(ABC):
    """
    Interface for LLM client operations.

    Following Interface Segregation Principle - only methods
    actually needed by the application are defined.
    """

    @abstractmethod
    async def generate_embedding(self, text: str) -> EmbeddingResult:
        """Generate embedding for text."""

    @abstractmethod
    async def chat_completion(
        self,
        messages: List[dict],
        temperature: float = 0.3,
        max_tokens: int = 100,
        operation: str = "chat_completion"
    ) -> ChatCompletionResult:
        """Generate chat completion."""

    async def close(self) -> None:
        """Release network resources held by the client."""


async def _export_metrics(
    model: str,
    operation: str,
    latency_ms: int,
    prompt_tokens: int = 0,
    completion_tokens: int = 0
) -> None:
    exporter = get_grafana_exporter()
    if exporter and exporter.is_enabled():
        await exporter.export_llm_metrics(
            model=model,
            operation=operation,
            latency_ms=latency_ms,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens
        )


class OpenAILLMClient(ILLMClient):
    """
    OpenAI client implementation.

    Provides async wrapper around OpenAI SDK operations.
    """

    def __init__(self, api_key: Optional[str] = None, config: Optional[Settings] = None):
        config = config or default_settings
        self._api_key = api_key or config.openai_api_key
        if not self._api_key:
            raise ConfigurationException("OpenAI API key not configured")

        self._client = AsyncOpenAI(api_key=self._api_key, timeout=30.0, max_retries=2)
        self._model = config.llm_model
        self._embedding_model = config.embedding_model

    async def generate_embedding(self, text: str) -> EmbeddingResult:
        """
        Generate embedding for text using the OpenAI embedding model.

        Raises:
            LLMException: If the request fails or the response is malformed
        """
        start_time = time.perf_counter()
        try:
            response = await self._client.embeddings.create(
                model=self._embedding_model,
                input=text,
                encoding_format="float"
            )
            embedding = list(response.data[0].embedding)
        except openai.OpenAIError as e:
            raise LLMException(f"Embedding generation failed: {e}")
        except (IndexError, AttributeError, TypeError) as e:
            raise LLMException(f"Malformed embedding response: {e}")

        latency_ms = int((time.perf_counter() - start_time) * 1000)
        await _export_metrics(self._embedding_model, "embedding", latency_ms)
        return EmbeddingResult(embedding=embedding, model=self._embedding_model, latency_ms=latency_ms)

    async def chat_completion(
        self,
        messages: List[dict],
        temperature: float = 0.3,
        max_tokens: int = 100,
        operation: str = "chat_completion"
    ) -> ChatCompletionResult:
        """
        Generate chat completion.

        Args:
            messages: List of message dicts with 'role' and 'content'
            temperature: Sampling temperature (0-1)
            max_tokens: Maximum tokens to generate
            operation: Operation type for metrics (issue_summary, ...)

        Raises:
            LLMException: If completion fails
        """
        start_time = time.perf_counter()

        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens
            )
            content = response.choices[0].message.content or ""
        except openai.OpenAIError as e:
            raise LLMException(f"Chat completion failed: {e}")
        except (IndexError, AttributeError) as e:
            raise LLMException(f"Malformed chat completion response: {e}")

        latency_ms = int((time.perf_counter() - start_time) * 1000)
        usage = response.usage
        prompt_tokens = usage.prompt_tokens if usage else 0
        completion_tokens = usage.completion_tokens if usage else 0

        await _export_metrics(self._model, operation, latency_ms, prompt_tokens, completion_tokens)

        return ChatCompletionResult(
            content=content,
            model=self._model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            latency_ms=latency_ms
        )

    async def close(self) -> None:
        await self._client.close()


class ZAIILLMClient(ILLMClient):
    """
    Z.AI SDK client implementation.

    The SDK is synchronous, so calls run in a worker thread to keep the
    event loop free while a batch of requests is in flight.
    """

    def __init__(self, api_key: Optional[str] = None, config: Optional[Settings] = None):
        config = config or default_settings
        self._api_key = api_key or config.zai_api_key
        if not self._api_key:
            raise ConfigurationException("Z.AI API key not configured")

        self._client = ZaiClient(api_key=self._api_key)
        self._model = config.llm_model
        self._embedding_model = config.embedding_model

    async def generate_embedding(self, text: str) -> EmbeddingResult:
        """
        Generate embedding for text using the Z.AI embedding model.

        Raises:
            LLMException: If embedding generation fails
        """
        start_time = time.perf_counter()
        try:
            response = await asyncio.to_thread(
                self._client.embeddings.create,
                model=self._embedding_model,
                input=text
            )
            embedding = list(response.data[0].embedding)
        except Exception as e:
            raise LLMException(f"Embedding generation failed: {e}")

        latency_ms = int((time.perf_counter() - start_time) * 1000)
        await _export_metrics(self._embedding_model, "embedding", latency_ms)
        return EmbeddingResult(embedding=embedding, model=self._embedding_model, latency_ms=latency_ms)

    async def chat_completion(
        self,
        messages: List[dict],
        temperature: float = 0.3,
        max_tokens: int = 100,
        operation: str = "chat_completion"
    ) -> ChatCompletionResult:
        """
        Generate chat completion using the configured GLM model.

        Raises:
            LLMException: If completion fails
        """
        start_time = time.perf_counter()

        try:
            response = await asyncio.to_thread(
                self._client.chat.completions.create,
                model=self._model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens
            )
            content = response.choices[0].message.content or ""
        except Exception as e:
            raise LLMException(f"Chat completion failed: {e}")

        latency_ms = int((time.perf_counter() - start_time) * 1000)

        # Z.AI doesn't return token usage, so we estimate
        prompt_tokens = len(str(messages))
        completion_tokens = len(content)

        await _export_metrics(self._model, operation, latency_ms, prompt_tokens, completion_tokens)

        return ChatCompletionResult(
            content=content,
            model=self._model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            latency_ms=latency_ms
        )


class MockLLMClient(ILLMClient):
    """
    Mock LLM client for local development.

    Returns deterministic pseudo-embeddings (same text, same vector) and a
    canned summary without calling external APIs.
    """

    def __init__(self, dimension: Optional[int] = None):
        self._dimension = dimension or default_settings.embedding_dimension

    async def generate_embedding(self, text: str) -> EmbeddingResult:
        """Create deterministic pseudo-embedding based on text hash."""
        seed = int(hashlib.sha256(text.encode("utf-8")).hexdigest()[:8], 16)
        rng = random.Random(seed)
        embedding = [rng.uniform(-1, 1) for _ in range(self._dimension)]
        return EmbeddingResult(embedding=embedding, model="mock-embedding")

    async def chat_completion(
        self,
        messages: List[dict],
        temperature: float = 0.3,
        max_tokens: int = 100,
        operation: str = "chat_completion"
    ) -> ChatCompletionResult:
        content = "Did not follow the documented procedure for this ticket type."
        return ChatCompletionResult(
            content=content,
            model="mock-model",
            prompt_tokens=100,
            completion_tokens=len(content.split()),
            latency_ms=0
        )


class UnavailableLLMClient(ILLMClient):
    """
    Stand-in used when no provider is configured.

    Every call fails with LLMException, which callers already handle:
    similarity search falls back to keywords, jobs count errors.
    """

    def __init__(self, reason: str):
        self.reason = reason

    async def generate_embedding(self, text: str) -> EmbeddingResult:
        raise LLMException(f"Provider unavailable: {self.reason}")

    async def chat_completion(
        self,
        messages: List[dict],
        temperature: float = 0.3,
        max_tokens: int = 100,
        operation: str = "chat_completion"
    ) -> ChatCompletionResult:
        raise LLMException(f"Provider unavailable: {self.reason}")


def create_llm_client(config: Optional[Settings] = None) -> ILLMClient:
    """
    Build the LLM client selected by ``LLM_PROVIDER``.

    Raises:
        ConfigurationException: If the selected provider has no API key
    """
    config = config or default_settings
    if config.llm_provider == LLMProvider.MOCK:
        return MockLLMClient(config.embedding_dimension)
    if config.llm_provider == LLMProvider.ZAI:
        return ZAIILLMClient(config=config)
    return OpenAILLMClient(config=config)
