"""
Configuration Module
====================

Application settings and configuration management using Pydantic.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator, model_validator
from functools import lru_cache
from typing import List, Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="qa-review-service", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/qa_reviews",
        description="Database connection URL (async driver)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== LLM Provider ==========
    llm_provider: str = Field(
        default="openai",
        description="Provider for embeddings and summaries: openai, zai or mock"
    )
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API key")
    zai_api_key: Optional[str] = Field(default=None, description="Z.AI API key")
    llm_model: Optional[str] = Field(
        default=None,
        description="Chat model used for issue summaries (provider default when unset)"
    )
    llm_temperature: float = Field(
        default=0.3,
        description="Default temperature for LLM",
        ge=0.0,
        le=1.0
    )
    summary_max_tokens: int = Field(
        default=100,
        description="Max tokens for a one-sentence issue summary",
        ge=1,
        le=1000
    )

    # ========== Embeddings ==========
    embedding_model: Optional[str] = Field(
        default=None,
        description="Embedding model name (provider default when unset)"
    )
    embedding_dimension: Optional[int] = Field(
        default=None,
        description="Embedding vector dimension returned by the provider (provider default when unset)",
        ge=8
    )
    embedding_max_input_chars: int = Field(
        default=8000,
        description="Provider input limit, applied at the call site",
        ge=100
    )
    embedding_min_text_length: int = Field(
        default=10,
        description="Normalized texts shorter than this are never embedded",
        ge=1
    )

    # ========== Embedding Backfill ==========
    backfill_batch_size: int = Field(default=20, description="Records per concurrent batch", ge=1, le=100)
    backfill_batch_delay_seconds: float = Field(
        default=1.0,
        description="Minimum spacing between batch starts",
        ge=0.0
    )

    # ========== Similarity Search ==========
    keyword_min_token_length: int = Field(default=3, ge=1)
    keyword_max_tokens: int = Field(default=15, ge=1)
    keyword_candidate_ceiling: int = Field(default=100, ge=1)
    keyword_score_floor: int = Field(default=20, ge=0, le=100)
    keyword_top_n: int = Field(default=5, ge=1)
    vector_candidate_ceiling: int = Field(default=200, ge=1)
    vector_score_floor: int = Field(default=25, ge=0, le=100)
    vector_top_n: int = Field(default=5, ge=1)
    similar_results_limit: int = Field(default=10, ge=1, le=50)
    similarity_embedding_timeout_seconds: float = Field(
        default=5.0,
        description="Budget for the embedding leg of an interactive search",
        gt=0
    )

    # ========== Issue Analysis ==========
    issue_bad_score_threshold: float = Field(default=90.0, ge=0, le=100)
    issue_similarity_threshold: float = Field(default=0.70, ge=0.0, le=1.0)
    issue_analysis_window_days: int = Field(default=21, ge=1)
    issue_summary_delay_seconds: float = Field(default=0.2, ge=0.0)
    issue_feedback_excerpt_chars: int = Field(default=500, ge=0)
    issue_analysis_enabled: bool = Field(
        default=True,
        description="Run the weekly issue analysis job in-process"
    )
    issue_analysis_day_of_week: str = Field(default="mon")
    issue_analysis_hour: int = Field(default=6, ge=0, le=23)

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"],
        description="Allowed CORS origins"
    )

    # ========== Grafana OTLP Metrics ==========
    grafana_host: Optional[str] = Field(
        default=None,
        description="Grafana OTLP gateway URL (e.g., https://otlp-gateway-prod-eu-west-2.grafana.net)"
    )
    grafana_api_key: Optional[str] = Field(
        default=None,
        description="Grafana API key for OTLP authentication"
    )
    grafana_instance_id: Optional[str] = Field(
        default=None,
        description="Grafana instance ID for OTLP authentication"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production", "test"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("llm_provider")
    @classmethod
    def validate_llm_provider(cls, v: str) -> str:
        """Ensure the LLM provider is supported."""
        v = v.lower()
        if v not in VALID_LLM_PROVIDERS:
            raise ValueError(f"llm_provider must be one of {VALID_LLM_PROVIDERS}")
        return v

    @model_validator(mode="after")
    def apply_provider_defaults(self) -> "Settings":
        """Fill unset model names and vector width from the provider's defaults."""
        chat_model, embedding_model, dimension = PROVIDER_DEFAULTS[self.llm_provider]
        if self.llm_model is None:
            self.llm_model = chat_model
        if self.embedding_model is None:
            self.embedding_model = embedding_model
        if self.embedding_dimension is None:
            self.embedding_dimension = dimension
        return self


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# ========== Constants ==========

class LLMProvider(str):
    """Supported embedding/summarization providers."""
    OPENAI = "openai"
    ZAI = "zai"
    MOCK = "mock"


class ReviewKind(str):
    """Kinds of reviewed interactions."""
    TICKET = "ticket"
    CONVERSATION = "conversation"


class MatchType(str):
    """How a similar review was found."""
    KEYWORD = "keyword"
    EMBEDDING = "embedding"


class EmbeddingMode(str):
    """Record selection modes for embedding backfill."""
    FRESH_MISSING = "fresh-missing"
    FORCE = "force"


class ResolutionMethod(str):
    """How a low-scoring review was judged resolved."""
    CATEGORY = "category"
    EMBEDDING = "embedding"


# ========== Lists for validation ==========

VALID_LLM_PROVIDERS = [LLMProvider.OPENAI, LLMProvider.ZAI, LLMProvider.MOCK]
VALID_REVIEW_KINDS = [ReviewKind.TICKET, ReviewKind.CONVERSATION]
VALID_MATCH_TYPES = [MatchType.KEYWORD, MatchType.EMBEDDING]
VALID_EMBEDDING_MODES = [EmbeddingMode.FRESH_MISSING, EmbeddingMode.FORCE]

# (chat model, embedding model, embedding dimension)
PROVIDER_DEFAULTS = {
    LLMProvider.OPENAI: ("gpt-4o-mini", "text-embedding-3-small", 1536),
    LLMProvider.ZAI: ("glm-4.7", "embedding-2", 1024),
    LLMProvider.MOCK: ("mock-model", "mock-embedding", 1536),
}


# Global settings instance
settings = get_settings()
