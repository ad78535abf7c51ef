"""
Call forwarding decisions.

Evaluation is an ordered rule table; the first rule whose predicate matches
decides. When no rule decides, the most recent assistant utterance is checked
with textual heuristics and, failing those, an LLM adjudicator.

Order:
1. guards (disabled, no destination, already attempted for this call)
2. explicit caller request for a human
3. assistant proposed a transfer itself
4. knowledge-base match veto
5. repeated caller dissatisfaction
6. complex topic keywords
7. adjudication (only once the transcript has enough turns)
"""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence, Set

import structlog
from pydantic import BaseModel, Field, ValidationError

from src.supportline.transcript import (
    Role,
    Turn,
    cites_knowledge_base,
    contains_human_request,
)

logger = structlog.get_logger(__name__)

AI_FORWARDING_PHRASES = (
    "human agent",
    "support specialist",
    "transfer you",
    "connect you",
    "prefer to speak with a human",
)

NEGATIVE_PATTERNS = (
    "not what i",
    "doesn't answer",
    "didn't answer",
    "not helpful",
    "don't understand",
    "not working",
    "incorrect",
    "wrong",
    "no that's not",
    "that doesn't help",
)

COMPLEX_TOPIC_KEYWORDS = (
    "custom integration",
    "api",
    "billing",
    "refund",
    "cancel",
    "subscription",
    "legal",
    "gdpr",
    "data protection",
    "security breach",
    "urgent",
    "emergency",
    "critical",
    "broken",
    "not working at all",
)
# Word-start anchored so "api" does not match "rapid".
_COMPLEX_TOPIC_RE = re.compile(
    r"\b(?:" + "|".join(re.escape(k) for k in COMPLEX_TOPIC_KEYWORDS) + r")",
    re.IGNORECASE,
)

DIRECT_FORWARDING_PHRASES = (
    "transfer you",
    "connect you with",
    "escalate this",
    "human agent",
    "support specialist",
)

CANNOT_HELP_PHRASES = (
    "i can't help",
    "i cannot help",
    "i'm unable to",
    "i am unable to",
    "i cannot assist",
    "i can't assist",
    "i'm not able to",
    "beyond what i can",
    "outside of what i can",
    "i don't have access",
)

ROUTINE_PHRASES = (
    "email address",
    "noted your email",
    "how can i help",
    "how can i assist",
    "anything else",
    "you're welcome",
    "have a great day",
    "thank you for calling",
    "goodbye",
    "is there something",
)

SUBSTANTIVE_MIN_WORDS = 25


@dataclass(frozen=True)
class ForwardingVerdict:
    should_forward: bool
    reason: str
    rule: str = ""


@dataclass(frozen=True)
class ForwardingContext:
    transcript: Sequence[Turn]
    knowledge_base_match_found: bool = False
    forwarding_enabled: bool = False
    destination: str = ""
    already_attempted: bool = False
    threshold: int = 3
    recent_window: int = 7
    # Partial phrases flagged as human requests; not part of the transcript.
    flagged_requests: Sequence[str] = ()

    def _recent(self, role: Role) -> List[str]:
        window = self.transcript[-self.recent_window:] if self.recent_window > 0 else []
        return [t.text for t in window if t.role == role]

    def recent_user_texts(self) -> List[str]:
        return self._recent(Role.USER)

    def recent_assistant_texts(self) -> List[str]:
        return self._recent(Role.ASSISTANT)

    def user_texts(self) -> List[str]:
        return [t.text for t in self.transcript if t.role == Role.USER]

    def last_assistant_text(self) -> Optional[str]:
        for turn in reversed(self.transcript):
            if turn.role == Role.ASSISTANT:
                return turn.text
        return None


@dataclass(frozen=True)
class ForwardingRule:
    name: str
    predicate: Callable[[ForwardingContext], bool]
    verdict: bool
    reason: str

    def apply(self, ctx: ForwardingContext) -> Optional[ForwardingVerdict]:
        if not self.predicate(ctx):
            return None
        return ForwardingVerdict(should_forward=self.verdict, reason=self.reason, rule=self.name)


def _is_negative(text: str) -> bool:
    lowered = text.lower()
    return any(p in lowered for p in NEGATIVE_PATTERNS)


def has_explicit_request(ctx: ForwardingContext) -> bool:
    texts = [*ctx.recent_user_texts(), *ctx.flagged_requests]
    return any(contains_human_request(t) for t in texts)


def has_ai_escalation(ctx: ForwardingContext) -> bool:
    return any(
        phrase in text.lower()
        for text in ctx.recent_assistant_texts()
        for phrase in AI_FORWARDING_PHRASES
    )


def has_repeated_failure(ctx: ForwardingContext) -> bool:
    total = 0
    consecutive = 0
    for text in ctx.user_texts():
        if _is_negative(text):
            total += 1
            consecutive += 1
            if consecutive >= 2:
                return True
        else:
            consecutive = 0
    return total >= ctx.threshold


def has_complex_topic(ctx: ForwardingContext) -> bool:
    return any(_COMPLEX_TOPIC_RE.search(text) for text in ctx.user_texts())


DEFAULT_RULES: tuple[ForwardingRule, ...] = (
    ForwardingRule("disabled", lambda c: not c.forwarding_enabled, False, "Call forwarding is disabled"),
    ForwardingRule("no_destination", lambda c: not c.destination, False, "No forwarding destination configured"),
    ForwardingRule("already_attempted", lambda c: c.already_attempted, False, "Transfer already attempted for this call"),
    ForwardingRule("explicit_request", has_explicit_request, True, "Caller explicitly asked for a human agent"),
    ForwardingRule("ai_escalation", has_ai_escalation, True, "Assistant offered to connect a support specialist"),
    ForwardingRule("kb_veto", lambda c: c.knowledge_base_match_found, False, "Knowledge base answered the question"),
    ForwardingRule("repeated_failure", has_repeated_failure, True, "Caller repeatedly reported unhelpful answers"),
    ForwardingRule("complex_topic", has_complex_topic, True, "Conversation involves a complex topic"),
    ForwardingRule(
        "insufficient_history",
        lambda c: len(c.transcript) < c.threshold,
        False,
        "Not enough conversation to adjudicate",
    ),
)


def evaluate_rules(
    ctx: ForwardingContext,
    rules: Sequence[ForwardingRule] = DEFAULT_RULES,
) -> Optional[ForwardingVerdict]:
    """First matching rule wins. None means no rule decided and adjudication is next."""
    for rule in rules:
        verdict = rule.apply(ctx)
        if verdict is not None:
            return verdict
    return None


def classify_assistant_utterance(text: Optional[str]) -> Optional[ForwardingVerdict]:
    """
    Cheap read of the last assistant utterance before paying for an LLM call.

    Returns None when the text gives no clear signal.
    """
    if not text or not text.strip():
        return None
    lowered = text.lower()

    if any(p in lowered for p in DIRECT_FORWARDING_PHRASES):
        return ForwardingVerdict(True, "Assistant indicated a transfer", rule="utterance_forwarding")
    if any(p in lowered for p in CANNOT_HELP_PHRASES):
        return ForwardingVerdict(True, "Assistant could not help", rule="utterance_cannot_help")
    if any(p in lowered for p in ROUTINE_PHRASES):
        return ForwardingVerdict(False, "Routine conversation", rule="utterance_routine")
    if cites_knowledge_base(text):
        return ForwardingVerdict(False, "Assistant answered from the knowledge base", rule="utterance_kb")
    if len(text.split()) >= SUBSTANTIVE_MIN_WORDS:
        return ForwardingVerdict(False, "Assistant gave a substantive answer", rule="utterance_substantive")
    return None


class AdjudicationResult(BaseModel):
    """Structured forwarding decision from the adjudicator."""

    should_forward: bool = Field(
        alias="shouldForward",
        description="Whether the call should be forwarded to a human agent",
    )
    reason: str = Field(default="", description="Short justification")

    model_config = {"populate_by_name": True}


ADJUDICATOR_SYSTEM_PROMPT = """You review live customer support phone calls handled by an AI assistant.
Decide whether the call should now be forwarded to a human support agent.
Forward when the customer is stuck, frustrated, asks for something the assistant cannot do,
or the issue clearly needs account access or human judgement.
Do not forward routine exchanges (greetings, collecting contact details, answered questions).
Reply with a JSON object: {"shouldForward": true|false, "reason": "<short reason>"}"""


class ForwardingAdjudicator:
    """LLM-backed fallback. Any failure yields a conservative no-forward verdict."""

    def __init__(self, llm: Any):
        self._llm = llm

    async def adjudicate(self, transcript: Sequence[Turn]) -> ForwardingVerdict:
        formatted = "\n".join(
            f"{'Customer' if t.role == Role.USER else 'Agent'}: {t.text}" for t in transcript
        )
        try:
            data = await self._llm.complete_json(
                ADJUDICATOR_SYSTEM_PROMPT,
                f"TRANSCRIPT:\n{formatted}",
            )
            result = AdjudicationResult.model_validate(data)
        except (ValidationError, ValueError) as e:
            logger.warning("Forwarding adjudicator returned unusable output", error=str(e))
            return ForwardingVerdict(False, "Adjudicator output unusable", rule="adjudicator")
        except Exception as e:
            logger.error("Forwarding adjudicator failed", error=str(e))
            return ForwardingVerdict(False, "Adjudicator unavailable", rule="adjudicator")

        return ForwardingVerdict(result.should_forward, result.reason or "Adjudicator decision", rule="adjudicator")


class TransferRegistry:
    """
    Process-wide record of calls that already had a transfer attempt.

    Keyed by Twilio call SID; entries are evicted when the call's session ends.
    """

    def __init__(self) -> None:
        self._attempted: Set[str] = set()
        self._lock = threading.Lock()

    def was_attempted(self, key: Optional[str]) -> bool:
        if not key:
            return False
        with self._lock:
            return key in self._attempted

    def mark_attempted(self, key: str) -> bool:
        """Returns False if the key was already marked."""
        with self._lock:
            if key in self._attempted:
                return False
            self._attempted.add(key)
            return True

    def evict(self, key: Optional[str]) -> None:
        if not key:
            return
        with self._lock:
            self._attempted.discard(key)

    def __len__(self) -> int:
        with self._lock:
            return len(self._attempted)


_registry: Optional[TransferRegistry] = None


def get_transfer_registry() -> TransferRegistry:
    global _registry
    if _registry is None:
        _registry = TransferRegistry()
    return _registry


def registry_key(call_sid: Optional[str], session_id: str) -> str:
    # Before the call SID is known the session id stands in, so a failed
    # precondition is not re-attempted on every turn.
    return call_sid or f"session:{session_id}"


@dataclass
class ForwardingEngine:
    config: Any
    registry: TransferRegistry = field(default_factory=get_transfer_registry)
    adjudicator: Optional[ForwardingAdjudicator] = None
    rules: Sequence[ForwardingRule] = DEFAULT_RULES

    def build_context(self, session: Any, flagged_requests: Sequence[str] = ()) -> ForwardingContext:
        return ForwardingContext(
            transcript=tuple(session.state.transcript),
            knowledge_base_match_found=session.state.knowledge_base_match_found,
            forwarding_enabled=self.config.enable_call_forwarding,
            destination=self.config.support_agent_number,
            already_attempted=self.registry.was_attempted(registry_key(session.call_sid, session.session_id)),
            threshold=self.config.forwarding_threshold,
            recent_window=self.config.forwarding_recent_turns,
            flagged_requests=tuple(flagged_requests),
        )

    async def evaluate(self, session: Any, flagged_requests: Sequence[str] = ()) -> ForwardingVerdict:
        ctx = self.build_context(session, flagged_requests)
        verdict = evaluate_rules(ctx, self.rules)
        if verdict is None:
            verdict = classify_assistant_utterance(ctx.last_assistant_text())
        if verdict is None:
            if self.adjudicator is None:
                verdict = ForwardingVerdict(False, "No adjudicator configured", rule="adjudicator")
            else:
                verdict = await self.adjudicator.adjudicate(ctx.transcript)

        logger.info(
            "Forwarding evaluated",
            should_forward=verdict.should_forward,
            rule=verdict.rule,
            reason=verdict.reason,
            call_sid=session.call_sid,
        )
        return verdict

    def commit(self, session: Any, verdict: ForwardingVerdict) -> bool:
        """
        Record a positive verdict before any transfer runs.

        Returns False if another evaluation already claimed this call.
        """
        if not verdict.should_forward:
            return False
        key = registry_key(session.call_sid, session.session_id)
        if not self.registry.mark_attempted(key):
            logger.info("Transfer already claimed for call", key=key)
            return False
        session.state.mark_requires_followup()
        return True

    def release(self, session: Any) -> None:
        self.registry.evict(session.call_sid)
        self.registry.evict(registry_key(None, session.session_id))
