"""
Tests for post-call summarization.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from src.supportline.llm import LLMResponse
from src.supportline.summarizer import (
    DEFAULT_SUBJECT,
    Priority,
    TicketSummarizer,
    TranscriptEntry,
    extract_user_questions,
    normalize_subject,
    summarize,
)
from src.supportline.transcript import Role, TranscriptStore
from src.supportline.transcription import ParsedMessage


@pytest.fixture
def store(clock):
    return TranscriptStore(clock=clock)


def converse(store, clock, *pairs):
    for role, text in pairs:
        store.append_turn(role, text)
        clock.advance(1000)


RESOLVED_CALL = (
    (Role.USER, "Hi, my email is jane@example.com."),
    (Role.ASSISTANT, "Thank you, I've noted your email as jane@example.com. How can I help you with Kayako?"),
    (Role.USER, "How do I reset my password?"),
    (Role.ASSISTANT, "Here's how: click on Forgot password on the login page."),
    (Role.USER, "Great, thank you!"),
)

NO_KB_CALL = (
    (Role.USER, "Can I export reports to PDF?"),
    (
        Role.ASSISTANT,
        "I don't have specific information about that aspect of Kayako. "
        "I'll have a support specialist follow up with you at your email.",
    ),
)


class TestSummarize:
    def test_resolved_call_is_low_priority(self, store, clock):
        converse(store, clock, *RESOLVED_CALL)

        draft = summarize(store.state)

        assert draft.email == "jane@example.com"
        assert draft.resolved_questions == ["How do I reset my password?"]
        assert draft.unresolved_questions == []
        assert draft.requires_followup is False
        assert draft.priority == Priority.LOW
        assert draft.followup_reason.startswith("All questions were resolved")
        assert draft.subject == DEFAULT_SUBJECT
        assert draft.summary.startswith('The customer inquired about "How do I reset my password?".')
        assert "Password Reset Assistance" in draft.summary
        assert draft.summary.endswith("Successfully resolved 1 question(s).")

    def test_no_kb_match_is_high_priority(self, store, clock):
        converse(store, clock, *NO_KB_CALL)

        draft = summarize(store.state)

        assert draft.priority == Priority.HIGH
        assert draft.requires_followup is True
        assert draft.unresolved_questions == ["Can I export reports to PDF?"]
        assert draft.followup_reason == "Unresolved questions remain"

    def test_transferred_call_needs_followup(self, store, clock):
        converse(store, clock, (Role.USER, "hello"), (Role.ASSISTANT, "Hi there"))
        store.state.mark_requires_followup()

        draft = summarize(store.state)

        assert draft.priority == Priority.MEDIUM
        assert draft.followup_reason == "General follow-up required"

    def test_neutral_call_defaults_to_medium(self, store, clock):
        converse(store, clock, (Role.USER, "hello"), (Role.ASSISTANT, "Hi there"))
        draft = summarize(store.state)
        assert draft.requires_followup is False
        assert draft.priority == Priority.MEDIUM

    def test_topic_summary_without_questions(self, store, clock):
        converse(store, clock, (Role.USER, "My login fails"), (Role.ASSISTANT, "Let me look"))
        draft = summarize(store.state)
        assert draft.summary.startswith("The customer contacted support about our services.")

    def test_negative_follow_up_leaves_question_unresolved(self, store, clock):
        converse(
            store,
            clock,
            (Role.USER, "How do I enable SSO?"),
            (Role.ASSISTANT, "Navigate to Admin, then Security."),
            (Role.USER, "That's still not working"),
        )
        draft = summarize(store.state)
        assert draft.unresolved_questions == ["How do I enable SSO?"]
        assert draft.priority == Priority.HIGH


class TestParsedTranscript:
    def test_short_live_transcript_uses_parsed_audio(self, store, clock):
        converse(store, clock, (Role.ASSISTANT, "Hello, could you share your email?"))
        parsed = [
            ParsedMessage(role="agent", text="Hello, could you share your email?"),
            ParsedMessage(role="customer", text="Sure, bob at example dot com. What plans do you offer?"),
        ]

        draft = summarize(store.state, parsed)

        assert draft.email == "bob@example.com"
        assert "What plans do you offer?" in draft.summary
        assert draft.parsed_transcript == parsed

    def test_agent_read_back(self, store):
        parsed = [ParsedMessage(role="agent", text="Thank you, I've noted your email as carol@example.com.")]
        assert summarize(store.state, parsed).email == "carol@example.com"

    def test_captured_email_wins(self, store, clock):
        converse(store, clock, (Role.USER, "first@example.com"))
        parsed = [ParsedMessage(role="customer", text="second@example.com")]
        assert summarize(store.state, parsed).email == "first@example.com"


class TestRendering:
    def test_turns_and_observations_interleave(self, store, clock):
        store.append_turn(Role.USER, "reset my password", 0.95)
        clock.advance(500)
        store.add_observation("[Speech segment - Duration: 0.5s]")
        clock.advance(500)
        store.append_turn(Role.ASSISTANT, "Sure")

        lines = summarize(store.state).transcript_rendering.splitlines()

        assert lines == [
            "Customer [2023-11-14T22:13:20+00:00]: reset my password",
            "Customer (Raw) [2023-11-14T22:13:20+00:00] (Confidence: 0.95): reset my password",
            "Customer (Raw) [2023-11-14T22:13:20.500000+00:00] (Confidence: N/A): [Speech segment - Duration: 0.5s]",
            "Agent [2023-11-14T22:13:21+00:00]: Sure",
        ]

    def test_entry_iso_time(self):
        assert TranscriptEntry("Agent", 0, "hi").iso_time == "1970-01-01T00:00:00+00:00"


def test_question_extraction_keeps_question_marks():
    exchanges = [(Role.USER, "I use Kayako. How do I add agents? Tell me about SLAs.")]
    assert extract_user_questions(exchanges) == ["How do I add agents?", "Tell me about SLAs."]


@pytest.mark.parametrize(
    "raw, expected",
    [
        (None, DEFAULT_SUBJECT),
        ('  "Password Reset Help"  ', "Password Reset Help"),
        ("x" * 80, "x" * 67 + "..."),
    ],
)
def test_normalize_subject(raw, expected):
    assert normalize_subject(raw) == expected


class TestTicketSummarizer:
    @pytest.mark.asyncio
    async def test_uses_llm_analysis_and_subject(self, store, clock):
        converse(store, clock, *NO_KB_CALL)
        llm = MagicMock()
        llm.complete_json = AsyncMock(
            return_value={
                "resolvedQuestions": ["Can I export reports to PDF?"],
                "unresolvedQuestions": [],
                "hasPositiveAcknowledgment": False,
                "hasNegativeResponse": False,
                "topicKeywords": ["reports"],
            }
        )
        llm.complete_text = AsyncMock(return_value=LLMResponse(text='"Exporting Reports To PDF Format"'))

        draft = await TicketSummarizer(llm, company_name="Kayako").summarize(store.state)

        assert draft.subject == "Exporting Reports To PDF Format"
        assert draft.resolved_questions == ["Can I export reports to PDF?"]
        assert draft.topic_keywords == ["reports"]
        # The assistant still admitted a knowledge-base miss.
        assert draft.priority == Priority.HIGH
        assert draft.followup_reason == "No knowledge base match found"
        assert llm.complete_text.await_args.kwargs == {"temperature": 0.3, "max_tokens": 50}

    @pytest.mark.asyncio
    async def test_llm_failures_fall_back(self, store, clock):
        converse(store, clock, *RESOLVED_CALL)
        llm = MagicMock()
        llm.complete_json = AsyncMock(side_effect=RuntimeError("timeout"))
        llm.complete_text = AsyncMock(side_effect=RuntimeError("timeout"))

        draft = await TicketSummarizer(llm).summarize(store.state)

        assert draft.subject == DEFAULT_SUBJECT
        assert draft.resolved_questions == ["How do I reset my password?"]
        assert draft.priority == Priority.LOW

    @pytest.mark.asyncio
    async def test_no_questions_skips_analysis(self, store, clock):
        converse(store, clock, (Role.USER, "hello"), (Role.ASSISTANT, "Hi"))
        llm = MagicMock()
        llm.complete_json = AsyncMock()
        llm.complete_text = AsyncMock(return_value=LLMResponse(text="Caller Greeting Only"))

        await TicketSummarizer(llm).summarize(store.state)

        llm.complete_json.assert_not_awaited()
