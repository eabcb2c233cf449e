"""
Tests for review text handling.

Covers markup stripping, embedding text assembly, keyword extraction and
keyword scoring.
"""

import pytest

from src.review.domain import (
    ConversationReviewContent,
    IssueSummaryPromptBuilder,
    TicketReviewContent,
    extract_embedding_text,
    extract_keywords,
    keyword_match_score,
    normalize_text,
    truncate_for_provider,
)


class TestNormalizeText:
    def test_strips_tags_and_collapses_whitespace(self):
        assert normalize_text("<p>Agent   closed</p>\n<b>ticket</b>") == "Agent closed ticket"

    def test_tags_keep_words_apart(self):
        assert normalize_text("closed<br>ticket") == "closed ticket"

    def test_none_and_empty(self):
        assert normalize_text(None) == ""
        assert normalize_text("") == ""

    def test_only_markup_is_empty(self):
        assert normalize_text("<div><br/></div>  ") == ""


class TestExtractEmbeddingText:
    def test_ticket_joins_notes_and_feedback(self):
        content = TicketReviewContent(notes="<p>Wrong macro</p>", feedback="Use the refund macro")
        assert extract_embedding_text(content) == "Wrong macro | Use the refund macro"

    def test_ticket_ignores_short_description(self):
        content = TicketReviewContent(notes="Wrong macro", short_description="Refund request")
        assert extract_embedding_text(content) == "Wrong macro"

    def test_empty_parts_are_omitted(self):
        assert extract_embedding_text(TicketReviewContent(feedback="Only feedback")) == "Only feedback"
        assert extract_embedding_text(TicketReviewContent()) == ""

    def test_conversation_appends_transcript(self):
        content = ConversationReviewContent(
            notes="Rude tone",
            feedback="Apologize first",
            transcript="<i>Customer:</i> hello"
        )
        assert extract_embedding_text(content) == "Rude tone | Apologize first | Conversation: Customer: hello"

    def test_conversation_without_transcript(self):
        content = ConversationReviewContent(notes="Rude tone", feedback="Apologize first")
        assert extract_embedding_text(content) == "Rude tone | Apologize first"

    def test_unknown_content_rejected(self):
        with pytest.raises(TypeError):
            extract_embedding_text("plain string")

    def test_truncate_for_provider(self):
        assert truncate_for_provider("abcdef", 4) == "abcd"
        assert truncate_for_provider("abc", 4) == "abc"


class TestExtractKeywords:
    def test_mixed_language_query(self):
        keywords = extract_keywords("close-ovao tiket nakon RG1 macro")
        assert keywords == ["close", "ovao", "tiket", "rg1", "macro"]

    def test_stop_words_and_short_tokens_dropped(self):
        assert extract_keywords("the agent did not ask for an ID") == ["agent", "ask"]

    def test_serbian_letters_kept_in_tokens(self):
        assert extract_keywords("Agent nije proverio račun") == ["agent", "proverio", "račun"]

    def test_underscore_splits_tokens(self):
        assert extract_keywords("refund_policy") == ["refund", "policy"]

    def test_duplicates_preserved_and_capped(self):
        text = " ".join(f"word{i}" for i in range(20))
        keywords = extract_keywords(text)
        assert len(keywords) == 15
        assert keywords[0] == "word0"
        assert extract_keywords("macro macro macro") == ["macro", "macro", "macro"]

    def test_markup_is_ignored(self):
        assert extract_keywords("<strong>refund</strong>") == ["refund"]

    def test_empty_query(self):
        assert extract_keywords("") == []
        assert extract_keywords(None) == []


class TestKeywordMatchScore:
    def test_three_of_five_scores_sixty(self):
        keywords = ["close", "ovao", "tiket", "rg1", "macro"]
        score, matched = keyword_match_score(keywords, "Close-ovao tiket bez potvrde")
        assert score == 60
        assert matched == ["close", "ovao", "tiket"]

    def test_substring_match_is_case_insensitive(self):
        score, matched = keyword_match_score(["refund"], "REFUNDED twice")
        assert score == 100
        assert matched == ["refund"]

    def test_repeated_keyword_counts_each_time(self):
        score, matched = keyword_match_score(["macro", "macro", "refund"], "wrong macro")
        assert score == 67
        assert matched == ["macro"]

    def test_no_keywords(self):
        assert keyword_match_score([], "anything") == (0, [])

    def test_no_candidate_text(self):
        assert keyword_match_score(["refund"], None) == (0, [])


class TestIssueSummaryPrompt:
    def test_prompt_fallbacks(self):
        prompt = IssueSummaryPromptBuilder.build_prompt("", None, [])
        assert "Categories: Unknown" in prompt
        assert "Notes: No notes" in prompt
        assert "Feedback: No feedback" in prompt

    def test_prompt_contains_review_text(self):
        messages = IssueSummaryPromptBuilder.build_messages(
            "<p>Skipped verification</p>", "Verify first", ["Security", "Process"]
        )
        assert len(messages) == 1
        assert messages[0]["role"] == "user"
        assert "Categories: Security, Process" in messages[0]["content"]
        assert "Notes: Skipped verification" in messages[0]["content"]

    def test_clean_summary(self):
        assert IssueSummaryPromptBuilder.clean_summary('  "Skipped identity check."  ') == "Skipped identity check."
        assert IssueSummaryPromptBuilder.clean_summary("   ") == IssueSummaryPromptBuilder.FALLBACK_SUMMARY
        assert IssueSummaryPromptBuilder.clean_summary(None) == "Issue details unavailable"
