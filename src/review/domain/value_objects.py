"""
Review Value Objects
====================

Immutable configuration objects and pure functions of the review domain:
text normalization, keyword extraction and scoring, cosine similarity,
and the issue-summary prompt.

Nothing in this module performs I/O.
"""

import math
import re
from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional, Sequence, Tuple

import numpy as np

from src.config import Settings, settings as default_settings
from src.review.domain.entities import (
    ConversationReviewContent,
    ReviewContent,
    TicketReviewContent,
)


_TAG_RE = re.compile(r"<[^>]*>")
_WHITESPACE_RE = re.compile(r"\s+")
# Unicode letters and digits; underscore splits tokens like any punctuation
_TOKEN_RE = re.compile(r"[^\W_]+")


DEFAULT_STOP_WORDS: FrozenSet[str] = frozenset({
    # English
    "the", "and", "for", "that", "this", "with", "from", "have", "was",
    "were", "are", "been", "being", "has", "had", "does", "did", "will",
    "would", "could", "should", "may", "might", "must", "shall", "can",
    "need", "dare", "ought", "used", "also", "just", "only", "even", "more",
    "most", "other", "some", "such", "than", "too", "very", "own", "same",
    "into", "over", "after", "before", "between", "under", "again",
    "further", "then", "once", "here", "there", "when", "where", "why",
    "how", "all", "each", "few", "many", "much", "both", "any", "these",
    "those", "what", "which", "who", "whom", "but", "not", "out", "about",
    "because", "while", "during", "through",
    # Serbian
    "lepo", "dobro", "smo", "mogli", "nakon", "koji", "koja", "koje",
    "tako", "sto", "što", "ali", "vec", "već", "jos", "još", "biti", "bio",
    "bila", "bilo", "bice", "biće", "kao", "ili", "jer", "samo", "nije",
    "treba", "kada", "kod", "ima",
})


# ========== Text ==========

def normalize_text(raw: Optional[str]) -> str:
    """
    Strip markup tags and collapse whitespace.

    Tags become a single space so words on both sides of a tag stay apart.
    ``None`` and empty input yield ``""``.
    """
    if not raw:
        return ""
    if not isinstance(raw, str):
        raw = str(raw)
    text = _TAG_RE.sub(" ", raw)
    return _WHITESPACE_RE.sub(" ", text).strip()


def extract_embedding_text(content: ReviewContent) -> str:
    """
    Build the normalized text an embedding is computed over.

    ``"<notes> | <feedback>"`` with empty parts omitted; conversation
    reviews append ``" | Conversation: <transcript>"``.
    """
    if isinstance(content, TicketReviewContent):
        parts = [normalize_text(content.notes), normalize_text(content.feedback)]
    elif isinstance(content, ConversationReviewContent):
        parts = [normalize_text(content.notes), normalize_text(content.feedback)]
        transcript = normalize_text(content.transcript)
        if transcript:
            parts.append(f"Conversation: {transcript}")
    else:
        raise TypeError(f"Unsupported review content: {type(content).__name__}")

    return " | ".join(part for part in parts if part)


def truncate_for_provider(text: str, max_chars: int) -> str:
    return text[:max_chars] if len(text) > max_chars else text


# ========== Keywords ==========

def extract_keywords(
    text: Optional[str],
    min_length: int = 3,
    max_tokens: int = 15,
    stop_words: FrozenSet[str] = DEFAULT_STOP_WORDS
) -> List[str]:
    """
    Tokenize query text into search keywords.

    Keeps the first ``max_tokens`` tokens (in original order, duplicates
    included) that are at least ``min_length`` long and not stop-words.
    """
    tokens = _TOKEN_RE.findall(normalize_text(text).lower())
    keywords = [
        token for token in tokens
        if len(token) >= min_length and token not in stop_words
    ]
    return keywords[:max_tokens]


def keyword_match_score(keywords: Sequence[str], candidate_text: Optional[str]) -> Tuple[int, List[str]]:
    """
    Score a candidate by the share of query keywords it contains.

    Returns:
        (round(100 * matched / total), distinct matched keywords in query order)
    """
    if not keywords:
        return 0, []

    haystack = normalize_text(candidate_text).lower()
    hits = [keyword for keyword in keywords if keyword in haystack]
    score = round(100 * len(hits) / len(keywords))

    matched: List[str] = []
    for keyword in hits:
        if keyword not in matched:
            matched.append(keyword)
    return score, matched


# ========== Vectors ==========

def cosine_similarity(a: Optional[Sequence[float]], b: Optional[Sequence[float]]) -> float:
    """
    Cosine similarity of two vectors.

    Returns 0.0 instead of raising when the vectors are missing, empty,
    of different lengths, non-numeric, have a zero norm, or the result is
    not finite.
    """
    if a is None or b is None:
        return 0.0
    try:
        va = np.asarray(a, dtype=np.float64)
        vb = np.asarray(b, dtype=np.float64)
    except (TypeError, ValueError):
        return 0.0

    if va.ndim != 1 or va.size == 0 or va.shape != vb.shape:
        return 0.0

    with np.errstate(all="ignore"):
        norm_a = np.linalg.norm(va)
        norm_b = np.linalg.norm(vb)
        if norm_a == 0 or norm_b == 0:
            return 0.0
        similarity = float(np.dot(va, vb) / (norm_a * norm_b))

    if not math.isfinite(similarity):
        return 0.0
    return similarity


def similarity_to_score(similarity: float) -> int:
    """Scale a cosine similarity to an integer score clamped to 0..100."""
    return max(0, min(100, round(100 * similarity)))


# ========== Configuration ==========

@dataclass(frozen=True)
class RetrievalConfig:
    """Knobs of the hybrid similarity search."""
    min_token_length: int = 3
    max_tokens: int = 15
    keyword_candidate_ceiling: int = 100
    keyword_score_floor: int = 20
    keyword_top_n: int = 5
    vector_candidate_ceiling: int = 200
    vector_score_floor: int = 25
    vector_top_n: int = 5
    default_limit: int = 10
    max_limit: int = 50
    embedding_timeout_seconds: float = 5.0
    stop_words: FrozenSet[str] = field(default=DEFAULT_STOP_WORDS)

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "RetrievalConfig":
        config = config or default_settings
        return cls(
            min_token_length=config.keyword_min_token_length,
            max_tokens=config.keyword_max_tokens,
            keyword_candidate_ceiling=config.keyword_candidate_ceiling,
            keyword_score_floor=config.keyword_score_floor,
            keyword_top_n=config.keyword_top_n,
            vector_candidate_ceiling=config.vector_candidate_ceiling,
            vector_score_floor=config.vector_score_floor,
            vector_top_n=config.vector_top_n,
            default_limit=config.similar_results_limit,
            embedding_timeout_seconds=config.similarity_embedding_timeout_seconds,
        )


@dataclass(frozen=True)
class EmbeddingConfig:
    """Embedding provider limits and backfill pacing."""
    model: str = "text-embedding-3-small"
    dimension: int = 1536
    max_input_chars: int = 8000
    min_text_length: int = 10
    batch_size: int = 20
    batch_delay_seconds: float = 1.0

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "EmbeddingConfig":
        config = config or default_settings
        return cls(
            model=config.embedding_model,
            dimension=config.embedding_dimension,
            max_input_chars=config.embedding_max_input_chars,
            min_text_length=config.embedding_min_text_length,
            batch_size=config.backfill_batch_size,
            batch_delay_seconds=config.backfill_batch_delay_seconds,
        )


@dataclass(frozen=True)
class IssueAnalysisConfig:
    """Thresholds and pacing of the unresolved-issue analysis."""
    bad_score_threshold: float = 90.0
    similarity_threshold: float = 0.70
    window_days: int = 21
    summary_delay_seconds: float = 0.2
    feedback_excerpt_chars: int = 500
    summary_max_tokens: int = 100
    temperature: float = 0.3

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "IssueAnalysisConfig":
        config = config or default_settings
        return cls(
            bad_score_threshold=config.issue_bad_score_threshold,
            similarity_threshold=config.issue_similarity_threshold,
            window_days=config.issue_analysis_window_days,
            summary_delay_seconds=config.issue_summary_delay_seconds,
            feedback_excerpt_chars=config.issue_feedback_excerpt_chars,
            summary_max_tokens=config.summary_max_tokens,
            temperature=config.llm_temperature,
        )


# ========== Prompts ==========

class IssueSummaryPromptBuilder:
    """
    Builds the prompt for one-sentence issue summaries.

    Keeps all summary prompt text in one place.
    """

    FALLBACK_SUMMARY = "Issue details unavailable"

    PROMPT_TEMPLATE = """Based on the following QA ticket review, write ONE SHORT sentence (max 15 words) summarizing what the agent did wrong. Be specific and actionable.

Categories: {categories}
Notes: {notes}
Feedback: {feedback}

Write ONLY the summary sentence, nothing else. Example format: "Failed to verify customer identity before processing refund request.\""""

    @classmethod
    def build_prompt(cls, notes: Optional[str], feedback: Optional[str], categories: Sequence[str]) -> str:
        return cls.PROMPT_TEMPLATE.format(
            categories=", ".join(categories) or "Unknown",
            notes=normalize_text(notes) or "No notes",
            feedback=normalize_text(feedback) or "No feedback",
        )

    @classmethod
    def build_messages(cls, notes: Optional[str], feedback: Optional[str], categories: Sequence[str]) -> List[dict]:
        return [{"role": "user", "content": cls.build_prompt(notes, feedback, categories)}]

    @classmethod
    def clean_summary(cls, raw: Optional[str]) -> str:
        """Trim the model output; empty output becomes the fallback text."""
        summary = (raw or "").strip().strip('"').strip()
        return summary or cls.FALLBACK_SUMMARY
