"""
Conversation transcript for one call.

Two channels are kept side by side:
- transcript: finalized turns, deduplicated against the immediately preceding turn
- raw_observations: every recognition result for the caller (partial, final,
  segment placeholders), kept for the post-call ticket

Appending a turn may emit a `TurnAppended` notification. The session wires that
sink to a queue drained by the forwarding worker, so the append itself never waits
on forwarding evaluation.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, List, Optional

import structlog

from src.supportline.confidence import (
    DEFAULT_OBSERVATION_THRESHOLDS,
    DEFAULT_TURN_THRESHOLDS,
    ConfidenceLevel,
    ConfidenceThresholds,
    classify,
    coerce_confidence,
)

logger = structlog.get_logger(__name__)

SEGMENT_PLACEHOLDER_PREFIX = "[Speech segment"

EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
SPOKEN_EMAIL_RE = re.compile(
    r"\b([a-zA-Z0-9._%+-]+)\s+(?:at|\(at\)|@)\s+([a-zA-Z0-9.-]+)\s+(?:dot|\(dot\)|period|\.)\s+([a-zA-Z]{2,})\b",
    re.IGNORECASE,
)

HUMAN_REQUEST_PHRASES = (
    "speak to agent",
    "talk to human",
    "real person",
    "speak with someone",
    "human agent",
    "transfer me",
    "connect me to",
    "speak to a human",
    "talk to a person",
    "speak with a representative",
    "connect me with someone",
    "need a human",
    "want to talk to a human",
    "agent please",
    "representative",
    "speak to support",
    "talk to support",
    "human support",
    "need help from a person",
    "can i speak to",
    "can i talk to",
    "talk to your humans",
    "talk to humans",
    "speak with humans",
    "connect to a human",
    "human operator",
    "live agent",
    "live person",
    "actual person",
    "talk to someone else",
    "speak to someone else",
    "get me a human",
    "i want a human",
    "human please",
)

NO_KB_MATCH_PHRASES = (
    "i don't have specific information",
    "i'll have a support specialist follow up",
    "would you like me to connect you with a support specialist",
    "i don't have that information in my knowledge base",
)

KB_CITATION_PHRASES = (
    "according to our",
    "our documentation",
    "the knowledge base",
    "here's how",
    "here are the steps",
    "follow these steps",
    "the steps are",
    "navigate to",
    "go to the",
    "click on",
)


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


def _now_ms() -> float:
    return time.time() * 1000


def extract_email(text: str) -> Optional[str]:
    """Standard `local@domain.tld` first, then spoken `local at domain dot tld`."""
    if not text:
        return None

    match = EMAIL_RE.search(text)
    if match:
        return match.group(0)

    spoken = SPOKEN_EMAIL_RE.search(text)
    if spoken:
        return f"{spoken.group(1)}@{spoken.group(2)}.{spoken.group(3)}"

    return None


def extract_email_from_texts(texts: Iterable[str]) -> Optional[str]:
    for text in texts:
        email = extract_email(text)
        if email:
            return email
    return None


def contains_human_request(text: str) -> bool:
    lowered = (text or "").lower()
    return any(phrase in lowered for phrase in HUMAN_REQUEST_PHRASES)


def indicates_no_kb_match(text: str) -> bool:
    lowered = (text or "").lower()
    return any(phrase in lowered for phrase in NO_KB_MATCH_PHRASES)


def cites_knowledge_base(text: str) -> bool:
    lowered = (text or "").lower()
    return any(phrase in lowered for phrase in KB_CITATION_PHRASES)


@dataclass
class Turn:
    role: Role
    text: str
    timestamp: float
    confidence: Optional[float] = None
    confidence_level: Optional[ConfidenceLevel] = None


@dataclass
class RawSpeechEvent:
    text: str
    timestamp: float
    confidence: Optional[float] = None
    is_final: bool = False
    duration: Optional[float] = None
    start_time: Optional[object] = None
    end_time: Optional[object] = None
    confidence_level: Optional[ConfidenceLevel] = None

    @property
    def is_placeholder(self) -> bool:
        return self.text.startswith(SEGMENT_PLACEHOLDER_PREFIX)


@dataclass
class CallerDetails:
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None

    @property
    def has_provided_email(self) -> bool:
        return bool(self.email)

    def set_email(self, email: str) -> bool:
        """Set once; later calls are ignored."""
        if self.email or not email:
            return False
        self.email = email
        return True

    def set_phone(self, phone: str) -> bool:
        if self.phone or not phone:
            return False
        self.phone = phone
        return True


@dataclass
class ConversationState:
    transcript: List[Turn] = field(default_factory=list)
    raw_observations: List[RawSpeechEvent] = field(default_factory=list)
    caller: CallerDetails = field(default_factory=CallerDetails)
    knowledge_base_match_found: bool = False
    requires_human_followup: bool = False

    def mark_requires_followup(self) -> None:
        # Monotonic: never reset within a session.
        self.requires_human_followup = True

    def user_texts(self) -> List[str]:
        return [t.text for t in self.transcript if t.role == Role.USER]

    def assistant_texts(self) -> List[str]:
        return [t.text for t in self.transcript if t.role == Role.ASSISTANT]


@dataclass(frozen=True)
class TurnAppended:
    """Notification emitted after a turn lands in the transcript.

    `observation` marks a flagged partial phrase that is not (yet) a turn.
    """
    role: Role
    text: str
    human_request: bool = False
    observation: bool = False


TurnSink = Callable[[TurnAppended], None]


class TranscriptStore:
    """Append-only transcript with dedup, raw observation log and email capture."""

    def __init__(
        self,
        state: Optional[ConversationState] = None,
        *,
        turn_thresholds: ConfidenceThresholds = DEFAULT_TURN_THRESHOLDS,
        observation_thresholds: ConfidenceThresholds = DEFAULT_OBSERVATION_THRESHOLDS,
        clock: Callable[[], float] = _now_ms,
        on_turn: Optional[TurnSink] = None,
    ):
        self.state = state or ConversationState()
        self.turn_thresholds = turn_thresholds
        self.observation_thresholds = observation_thresholds
        self._clock = clock
        self._on_turn = on_turn

    def set_sink(self, on_turn: Optional[TurnSink]) -> None:
        self._on_turn = on_turn

    @property
    def turns(self) -> List[Turn]:
        return self.state.transcript

    def __len__(self) -> int:
        return len(self.state.transcript)

    def append_turn(
        self,
        role: Role,
        text: str,
        confidence: Optional[float] = None,
        *,
        notify: bool = True,
    ) -> Optional[Turn]:
        """
        Append a finalized turn.

        Returns the new Turn, or None when the text was blank or a duplicate of
        the previous turn. User turns always land in raw_observations, even
        when deduplicated out of the transcript.
        """
        role = Role(role)
        trimmed = (text or "").strip()
        if not trimmed:
            return None

        now = self._clock()
        score = coerce_confidence(confidence)
        level = classify(score, self.turn_thresholds) if score is not None else None

        if role == Role.USER:
            self.state.raw_observations.append(
                RawSpeechEvent(
                    text=trimmed,
                    timestamp=now,
                    confidence=score,
                    is_final=True,
                    confidence_level=level,
                )
            )

        human_request = role == Role.USER and contains_human_request(trimmed)

        last = self.state.transcript[-1] if self.state.transcript else None
        if last is not None and last.role == role and last.text == trimmed:
            logger.debug("Duplicate turn skipped", role=role.value)
            if notify and human_request:
                self._emit(TurnAppended(role=role, text=trimmed, human_request=True))
            return None

        turn = Turn(role=role, text=trimmed, timestamp=now, confidence=score, confidence_level=level)
        self.state.transcript.append(turn)

        if role == Role.USER:
            if level == ConfidenceLevel.LOW:
                logger.info("Low confidence caller turn", confidence=score)
            self._capture_email()
        else:
            self._update_knowledge_base_match(trimmed)

        if notify and (role == Role.ASSISTANT or human_request):
            self._emit(TurnAppended(role=role, text=trimmed, human_request=human_request))

        return turn

    def add_observation(
        self,
        text: str,
        *,
        confidence: Optional[float] = None,
        is_final: bool = False,
        duration: Optional[float] = None,
        start_time: Optional[object] = None,
        end_time: Optional[object] = None,
        timestamp: Optional[float] = None,
    ) -> RawSpeechEvent:
        """Record a raw recognition observation (partial or final) for the caller."""
        score = coerce_confidence(confidence)
        event = RawSpeechEvent(
            text=text,
            timestamp=self._clock() if timestamp is None else timestamp,
            confidence=score,
            is_final=is_final,
            duration=duration,
            start_time=start_time,
            end_time=end_time,
            confidence_level=classify(score, self.observation_thresholds) if score is not None else None,
        )
        self.state.raw_observations.append(event)
        return event

    def has_real_observation_between(self, start_ms: float, end_ms: float) -> bool:
        return any(
            start_ms <= obs.timestamp <= end_ms and not obs.is_placeholder
            for obs in self.state.raw_observations
        )

    def recent_turns(self, count: int) -> List[Turn]:
        if count <= 0:
            return []
        return self.state.transcript[-count:]

    def _capture_email(self) -> None:
        if self.state.caller.has_provided_email:
            return
        email = extract_email_from_texts(t.text for t in self.state.transcript)
        if email and self.state.caller.set_email(email):
            logger.info("Caller email captured", email=email)

    def _update_knowledge_base_match(self, text: str) -> None:
        # Any answer counts as a match unless the assistant admits it has none.
        self.state.knowledge_base_match_found = not indicates_no_kb_match(text)

    def _emit(self, note: TurnAppended) -> None:
        if self._on_turn is None:
            return
        self._on_turn(note)
