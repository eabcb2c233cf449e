"""
Review External Service Adapters
================================

Adapters for external services used by the review module: the embedding
and summarization providers (both served by the shared LLM client) and
the APScheduler wrapper for the weekly issue analysis.

Implements the interfaces defined in the application layer using concrete
external service implementations.
"""

import time
from typing import Awaitable, Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from src.core import LLMException
from src.infrastructure.llm import ILLMClient
from src.review.application import IEmbeddingProvider, ISummarizationProvider
from src.review.domain import (
    EmbeddingConfig,
    IssueAnalysisConfig,
    IssueSummaryPromptBuilder,
    ReviewRecord,
    truncate_for_provider,
)
from src.shared.infrastructure.grafana import get_grafana_exporter
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class EmbeddingProviderAdapter(IEmbeddingProvider):
    """
    Adapter that wraps the infrastructure LLM client for embeddings.

    Enforces the provider input limit and the configured vector width, so
    vectors of any other width never reach the store.
    """

    def __init__(self, client: ILLMClient, config: EmbeddingConfig):
        self._client = client
        self._config = config
        self._model = config.model

    @property
    def model_name(self) -> str:
        """Model that produced the last vector; the configured one until then."""
        return self._model

    async def embed(self, text: str) -> Optional[List[float]]:
        """
        Embed text, truncated to the provider input limit.

        Returns:
            The vector, or None for empty input

        Raises:
            LLMException: On provider failure or unexpected dimensionality
        """
        if not text or not text.strip():
            return None

        result = await self._client.generate_embedding(
            truncate_for_provider(text, self._config.max_input_chars)
        )
        if not result.embedding:
            raise LLMException("Provider returned an empty embedding")
        if len(result.embedding) != self._config.dimension:
            raise LLMException(
                f"Embedding has {len(result.embedding)} dimensions, expected {self._config.dimension}",
                {"model": result.model}
            )
        self._model = result.model or self._config.model
        return result.embedding


class SummarizationProviderAdapter(ISummarizationProvider):
    """Adapter that turns a review into a one-sentence issue summary."""

    def __init__(self, client: ILLMClient, config: IssueAnalysisConfig):
        self._client = client
        self._config = config

    async def summarize(self, record: ReviewRecord) -> str:
        """
        Summarize what the agent did wrong.

        Raises:
            LLMException: If the provider call fails
        """
        messages = IssueSummaryPromptBuilder.build_messages(
            record.notes, record.feedback, record.categories
        )
        response = await self._client.chat_completion(
            messages=messages,
            temperature=self._config.temperature,
            max_tokens=self._config.summary_max_tokens,
            operation="issue_summary"
        )
        return IssueSummaryPromptBuilder.clean_summary(response.content)


async def export_job_metrics(job: str, counters: Dict[str, int], started: float) -> None:
    """Push job outcome counters to Grafana when it is configured."""
    exporter = get_grafana_exporter()
    if exporter and exporter.is_enabled():
        duration_ms = int((time.perf_counter() - started) * 1000)
        await exporter.export_job_metrics(job, counters, duration_ms)


class IssueAnalysisScheduler:
    """
    Wrapper for APScheduler running the weekly issue analysis.

    Manages the lifecycle of the scheduler and its single cron job.
    """

    JOB_ID = "issue_analysis"

    def __init__(self, day_of_week: str = "mon", hour: int = 6, timezone: str = "UTC"):
        self.day_of_week = day_of_week
        self.hour = hour
        self.timezone = timezone
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    async def start(self, job_func: Callable[[], Awaitable[None]]) -> None:
        """Start the scheduler with the given job function."""
        if self._running:
            logger.warning("Issue analysis scheduler already running")
            return

        self._scheduler = AsyncIOScheduler(timezone=self.timezone)

        self._scheduler.add_job(
            job_func,
            CronTrigger(day_of_week=self.day_of_week, hour=self.hour, minute=0, timezone=self.timezone),
            id=self.JOB_ID,
            name="Weekly Agent Issue Analysis",
            misfire_grace_time=3600,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )

        self._scheduler.start()
        self._running = True

        logger.info(
            "Issue analysis scheduler started",
            extra={"day_of_week": self.day_of_week, "hour": self.hour, "timezone": self.timezone}
        )

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=False)

        self._running = False
        logger.info("Issue analysis scheduler stopped")

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._running
