"""
Post-call summarization.

`build_ticket_draft` is the pure core: given the conversation state, an optional
parsed audio transcript, a resolution analysis and a subject it derives the
caller email, questions, priority and transcript rendering. `TicketSummarizer`
adds the LLM-backed parts (resolution analysis, subject line) with keyword
fallbacks when the model is unavailable.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Sequence, Tuple

import structlog
from pydantic import BaseModel, Field, ValidationError

from src.supportline.llm import ChatLLM
from src.supportline.transcript import (
    ConversationState,
    Role,
    extract_email,
    extract_email_from_texts,
    indicates_no_kb_match,
)
from src.supportline.transcription import ParsedMessage

logger = structlog.get_logger(__name__)

DEFAULT_SUBJECT = "Support Conversation"
MAX_SUBJECT_CHARS = 70
PARSED_TRANSCRIPT_MAX_TURNS = 4

QUESTION_WORDS = ("how", "what", "why", "where", "when", "who", "can", "could", "would", "is", "are", "do", "does")
QUESTION_PHRASES = ("tell me about", "i need to know", "i want to know", "explain", "help me with")

POSITIVE_MARKERS = ("thank", "great", "perfect", "helpful", "appreciate", "got it", "understand", "clear")
NEGATIVE_MARKERS = (
    "not working",
    "doesn't work",
    "didn't work",
    "doesn't help",
    "didn't help",
    "still have",
    "still not",
    "not what i",
    "not correct",
)
TOPIC_KEYWORDS = (
    "sso",
    "single sign-on",
    "login",
    "password",
    "reset",
    "account",
    "admin",
    "administrator",
    "user",
    "profile",
    "email",
    "update",
    "ticket",
    "support",
    "help",
    "issue",
    "problem",
    "error",
)
CLOSING_USER_TURNS = 3

EMAIL_CONFIRMATION_RE = re.compile(r"noted your email as\s+", re.IGNORECASE)
_SENTENCE_RE = re.compile(r"[^.!?]+[.!?]*")

ANALYSIS_SYSTEM_PROMPT = """You are an expert conversation analyst for customer support interactions.
Your task is to analyze a conversation transcript between a customer and an AI support agent.
Determine which questions were resolved satisfactorily and which ones remain unresolved.
Also identify if the customer expressed positive acknowledgment or negative sentiment.
Extract key topic keywords related to the products and services discussed.

Respond with JSON using these fields:
- resolvedQuestions: array of questions that were satisfactorily answered
- unresolvedQuestions: array of questions that were not fully addressed
- hasPositiveAcknowledgment: boolean, true if the customer expressed satisfaction
- hasNegativeResponse: boolean, true if the customer expressed dissatisfaction
- topicKeywords: array of keywords for the products/services mentioned"""

SUBJECT_SYSTEM_PROMPT = """You are an expert at creating concise, descriptive email subject lines for customer support tickets.
Create a 5-6 word subject line that clearly describes the main topic or question discussed.
The subject should be specific enough that someone can understand what the conversation was about.
DO NOT use generic subjects like "Customer Support" or "Help Request".
DO NOT include phrases like "Re:" or "Subject:".
Just return the subject line text with no additional explanation or formatting."""


class Priority(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"

    @property
    def description(self) -> str:
        return {
            Priority.HIGH: "Requires immediate attention",
            Priority.MEDIUM: "Should be addressed soon",
            Priority.LOW: "Can be addressed when convenient",
        }[self]


Exchange = Tuple[Role, str]


class ResolutionAnalysis(BaseModel):
    """Structured result of the resolution analysis."""

    model_config = {"populate_by_name": True}

    resolved_questions: List[str] = Field(default_factory=list, alias="resolvedQuestions")
    unresolved_questions: List[str] = Field(default_factory=list, alias="unresolvedQuestions")
    has_positive_acknowledgment: bool = Field(default=False, alias="hasPositiveAcknowledgment")
    has_negative_response: bool = Field(default=False, alias="hasNegativeResponse")
    topic_keywords: List[str] = Field(default_factory=list, alias="topicKeywords")


@dataclass(frozen=True)
class TranscriptEntry:
    speaker: str
    timestamp: float
    text: str
    confidence: Optional[float] = None
    raw: bool = False

    @property
    def iso_time(self) -> str:
        return datetime.fromtimestamp(self.timestamp / 1000, tz=timezone.utc).isoformat()

    def render(self) -> str:
        if self.raw:
            confidence = f"{self.confidence:.2f}" if self.confidence is not None else "N/A"
            return f"{self.speaker} (Raw) [{self.iso_time}] (Confidence: {confidence}): {self.text}"
        return f"{self.speaker} [{self.iso_time}]: {self.text}"


@dataclass
class TicketDraft:
    subject: str
    summary: str
    email: Optional[str]
    priority: Priority
    requires_followup: bool
    followup_reason: str
    resolved_questions: List[str] = field(default_factory=list)
    unresolved_questions: List[str] = field(default_factory=list)
    topic_keywords: List[str] = field(default_factory=list)
    key_points: str = ""
    transcript_entries: List[TranscriptEntry] = field(default_factory=list)
    parsed_transcript: List[ParsedMessage] = field(default_factory=list)

    @property
    def transcript_rendering(self) -> str:
        return "\n".join(entry.render() for entry in self.transcript_entries)


def _split_sentences(text: str) -> List[str]:
    return [s.strip() for s in _SENTENCE_RE.findall(text or "") if s.strip(" .!?")]


def is_question(sentence: str) -> bool:
    if "?" in sentence:
        return True
    words = sentence.split()
    if not words:
        return False
    if words[0].lower().strip(",;:") in QUESTION_WORDS:
        return True
    lowered = sentence.lower()
    return any(phrase in lowered for phrase in QUESTION_PHRASES)


def extract_user_questions(exchanges: Sequence[Exchange]) -> List[str]:
    questions: List[str] = []
    for role, text in exchanges:
        if role != Role.USER:
            continue
        questions.extend(s for s in _split_sentences(text) if is_question(s))
    return questions


def generate_key_points(exchanges: Sequence[Exchange]) -> str:
    points: List[str] = []

    def add(point: str) -> None:
        if point not in points:
            points.append(point)

    for _, text in exchanges:
        lowered = text.lower()
        if "password" in lowered and "reset" in lowered:
            add("Password Reset Assistance")
        if "account" in lowered or "login" in lowered:
            add("Account Management")
        if "error" in lowered or "issue" in lowered or "problem" in lowered:
            add("Technical Support")
        if "how to" in lowered or "how do i" in lowered:
            add("Feature Usage Guidance")

    return ", ".join(points) or "General Inquiry"


def _is_negative(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in NEGATIVE_MARKERS)


def _is_positive(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in POSITIVE_MARKERS)


def heuristic_resolution(exchanges: Sequence[Exchange], questions: Sequence[str]) -> ResolutionAnalysis:
    """
    Keyword analysis used when the LLM is unavailable.

    A question counts as resolved when an assistant reply follows it, that reply
    does not admit a knowledge-base miss, and the caller's next turn is not a
    complaint.
    """
    if not questions or len(exchanges) < 2:
        return ResolutionAnalysis()

    wanted = set(questions)
    resolved: List[str] = []
    unresolved: List[str] = []

    for i, (role, text) in enumerate(exchanges):
        if role != Role.USER:
            continue
        asked = [s for s in _split_sentences(text) if s in wanted and is_question(s)]
        if not asked:
            continue

        reply_index = next((j for j in range(i + 1, len(exchanges)) if exchanges[j][0] == Role.ASSISTANT), None)
        answered = reply_index is not None and not indicates_no_kb_match(exchanges[reply_index][1])
        if answered:
            follow_up = next(
                (exchanges[k][1] for k in range(reply_index + 1, len(exchanges)) if exchanges[k][0] == Role.USER),
                None,
            )
            answered = follow_up is None or not _is_negative(follow_up)

        for question in asked:
            target = resolved if answered else unresolved
            if question not in resolved and question not in unresolved:
                target.append(question)

    topics: List[str] = []
    for _, text in exchanges:
        lowered = text.lower()
        for keyword in TOPIC_KEYWORDS:
            if keyword in lowered and keyword not in topics:
                topics.append(keyword)

    closing = [text for role, text in exchanges if role == Role.USER][-CLOSING_USER_TURNS:]
    return ResolutionAnalysis(
        resolved_questions=resolved,
        unresolved_questions=unresolved,
        has_positive_acknowledgment=any(_is_positive(t) for t in closing),
        has_negative_response=any(_is_negative(t) for t in closing),
        topic_keywords=topics,
    )


def derive_priority(
    *,
    requires_followup: bool,
    unresolved_count: int,
    no_kb_match: bool,
    positive_closing: bool,
) -> Priority:
    if unresolved_count > 0 or no_kb_match:
        return Priority.HIGH
    if requires_followup:
        return Priority.MEDIUM
    if positive_closing:
        return Priority.LOW
    return Priority.MEDIUM


def followup_reason(
    *,
    requires_followup: bool,
    unresolved_count: int,
    no_kb_match: bool,
    negative_response: bool,
) -> str:
    if not requires_followup:
        return "All questions were resolved successfully and the customer expressed satisfaction."
    if unresolved_count > 0:
        return "Unresolved questions remain"
    if no_kb_match:
        return "No knowledge base match found"
    if negative_response:
        return "Customer expressed dissatisfaction"
    return "General follow-up required"


def determine_email(state: ConversationState, parsed: Sequence[ParsedMessage] = ()) -> Optional[str]:
    """
    Caller email, most trusted source first: the captured value, the caller's
    parsed audio messages, the agent's "I've noted your email as ..." read-back,
    then any text at all.
    """
    if state.caller.email:
        return state.caller.email

    email = extract_email_from_texts(m.text for m in parsed if m.role == "customer")
    if email:
        return email

    agent_texts = list(state.assistant_texts()) + [m.text for m in parsed if m.role == "agent"]
    for text in agent_texts:
        match = EMAIL_CONFIRMATION_RE.search(text)
        if match:
            email = extract_email(text[match.end():])
            if email:
                return email

    return extract_email_from_texts(t.text for t in state.transcript)


def analysis_exchanges(state: ConversationState, parsed: Sequence[ParsedMessage] = ()) -> List[Exchange]:
    """Short live transcripts are replaced by the parsed audio transcript when one exists."""
    if parsed and len(state.transcript) <= PARSED_TRANSCRIPT_MAX_TURNS:
        return [(Role.USER if m.role == "customer" else Role.ASSISTANT, m.text) for m in parsed]
    return [(t.role, t.text) for t in state.transcript]


def render_transcript(state: ConversationState) -> List[TranscriptEntry]:
    """Turns and raw observations merged in timestamp order."""
    entries = [
        TranscriptEntry(
            speaker="Customer" if t.role == Role.USER else "Agent",
            timestamp=t.timestamp,
            text=t.text,
            confidence=t.confidence,
        )
        for t in state.transcript
    ]
    entries.extend(
        TranscriptEntry(
            speaker="Customer",
            timestamp=obs.timestamp,
            text=obs.text,
            confidence=obs.confidence,
            raw=True,
        )
        for obs in state.raw_observations
    )
    entries.sort(key=lambda e: e.timestamp)
    return entries


def normalize_subject(subject: Optional[str]) -> str:
    subject = (subject or "").strip().strip('"').strip()
    if not subject:
        return DEFAULT_SUBJECT
    if len(subject) > MAX_SUBJECT_CHARS:
        return subject[:MAX_SUBJECT_CHARS - 3] + "..."
    return subject


def build_summary(
    questions: Sequence[str],
    analysis: ResolutionAnalysis,
    exchanges: Sequence[Exchange],
    *,
    company_name: str = "",
) -> str:
    if questions:
        asked = f'"{questions[0]}"' if len(questions) == 1 else f'multiple questions including "{questions[0]}"'
        summary = f"The customer inquired about {asked}. "
    else:
        fallback = f"{company_name} services" if company_name else "our services"
        summary = f"The customer contacted support about {', '.join(analysis.topic_keywords) or fallback}. "

    if any(role == Role.ASSISTANT for role, _ in exchanges):
        summary += f"The AI provided assistance with {generate_key_points(exchanges)}. "

    if analysis.resolved_questions:
        summary += f"Successfully resolved {len(analysis.resolved_questions)} question(s). "

    return summary.strip()


def build_ticket_draft(
    state: ConversationState,
    parsed: Sequence[ParsedMessage] = (),
    *,
    analysis: Optional[ResolutionAnalysis] = None,
    subject: Optional[str] = None,
    company_name: str = "",
) -> TicketDraft:
    exchanges = analysis_exchanges(state, parsed)
    questions = extract_user_questions(exchanges)
    if analysis is None:
        analysis = heuristic_resolution(exchanges, questions)

    no_kb_match = any(indicates_no_kb_match(text) for role, text in exchanges if role == Role.ASSISTANT)
    unresolved_count = len(analysis.unresolved_questions)
    requires_followup = (
        no_kb_match
        or unresolved_count > 0
        or analysis.has_negative_response
        or state.requires_human_followup
    )

    return TicketDraft(
        subject=normalize_subject(subject),
        summary=build_summary(questions, analysis, exchanges, company_name=company_name),
        email=determine_email(state, parsed),
        priority=derive_priority(
            requires_followup=requires_followup,
            unresolved_count=unresolved_count,
            no_kb_match=no_kb_match,
            positive_closing=analysis.has_positive_acknowledgment,
        ),
        requires_followup=requires_followup,
        followup_reason=followup_reason(
            requires_followup=requires_followup,
            unresolved_count=unresolved_count,
            no_kb_match=no_kb_match,
            negative_response=analysis.has_negative_response,
        ),
        resolved_questions=list(analysis.resolved_questions),
        unresolved_questions=list(analysis.unresolved_questions),
        topic_keywords=list(analysis.topic_keywords),
        key_points=generate_key_points(exchanges),
        transcript_entries=render_transcript(state),
        parsed_transcript=list(parsed),
    )


def summarize(state: ConversationState, parsed: Sequence[ParsedMessage] = ()) -> TicketDraft:
    """Deterministic summary without any model calls."""
    return build_ticket_draft(state, parsed)


def _format_exchanges(exchanges: Sequence[Exchange]) -> str:
    return "\n".join(f"{'Customer' if role == Role.USER else 'Agent'}: {text}" for role, text in exchanges)


class TicketSummarizer:
    def __init__(self, llm: Optional[ChatLLM], *, company_name: str = ""):
        self._llm = llm
        self.company_name = company_name

    async def summarize(self, state: ConversationState, parsed: Sequence[ParsedMessage] = ()) -> TicketDraft:
        exchanges = analysis_exchanges(state, parsed)
        questions = extract_user_questions(exchanges)
        analysis = await self.analyze_resolution(exchanges, questions)
        subject = await self.generate_subject(exchanges)
        draft = build_ticket_draft(
            state,
            parsed,
            analysis=analysis,
            subject=subject,
            company_name=self.company_name,
        )
        logger.info(
            "Ticket draft built",
            subject=draft.subject,
            priority=draft.priority.value,
            questions=len(questions),
            resolved=len(draft.resolved_questions),
            unresolved=len(draft.unresolved_questions),
            email_found=bool(draft.email),
        )
        return draft

    async def analyze_resolution(self, exchanges: Sequence[Exchange], questions: Sequence[str]) -> ResolutionAnalysis:
        if not questions or len(exchanges) < 2:
            return ResolutionAnalysis()
        if self._llm is None:
            return heuristic_resolution(exchanges, questions)

        formatted_questions = "\n".join(f"Question {i + 1}: {q}" for i, q in enumerate(questions))
        user_message = (
            "Please analyze this customer support conversation:\n\n"
            f"TRANSCRIPT:\n{_format_exchanges(exchanges)}\n\n"
            f"CUSTOMER QUESTIONS:\n{formatted_questions}"
        )
        try:
            data = await self._llm.complete_json(ANALYSIS_SYSTEM_PROMPT, user_message, temperature=0.1)
            return ResolutionAnalysis.model_validate(data)
        except (ValueError, ValidationError) as e:
            logger.warning("Resolution analysis unusable, using keyword analysis", error=str(e))
        except Exception as e:
            logger.warning("Resolution analysis failed, using keyword analysis", error=str(e))
        return heuristic_resolution(exchanges, questions)

    async def generate_subject(self, exchanges: Sequence[Exchange]) -> str:
        if not exchanges or self._llm is None:
            return DEFAULT_SUBJECT
        user_message = (
            "Please create a concise, descriptive subject line (5-6 words) for this customer support conversation:\n\n"
            f"TRANSCRIPT:\n{_format_exchanges(exchanges)}"
        )
        try:
            response = await self._llm.complete_text(
                SUBJECT_SYSTEM_PROMPT,
                user_message,
                temperature=0.3,
                max_tokens=50,
            )
        except Exception as e:
            logger.warning("Subject generation failed", error=str(e))
            return DEFAULT_SUBJECT
        return normalize_subject(response.text)
