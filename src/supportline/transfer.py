"""
Live call transfer to a human agent.

`TwilioTelephony` wraps the (blocking) Twilio REST client and runs its calls in a
worker thread. `CallTransferOrchestrator` drives one transfer for a session:
acknowledge, brief, pause, redirect, re-resolve the call SID and retry once,
and apologise if that fails too.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import requests
import structlog
from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.rest import Client as TwilioClient
from twilio.twiml.voice_response import Dial, VoiceResponse

from src.supportline.forwarding import ForwardingVerdict, TransferRegistry
from src.supportline.transcript import ConversationState, Role, TranscriptStore

logger = structlog.get_logger(__name__)

ACKNOWLEDGEMENT_TEXT = (
    "I'll connect you with a support specialist who can better assist you with this issue. "
    "Please hold while I transfer your call."
)
PRECONDITION_TEXT = (
    "I'm sorry, I can't transfer your call right now because the call connection details are unavailable."
)
ACKNOWLEDGEMENT_MARKERS = (
    "connect you with a support specialist",
    "connect you with a human",
    "transfer your call",
    "transfer you",
    "i'll connect you",
)
INVALID_CALL_MARKERS = ("invalid callsid", "not found", "does not exist")
BRIEFING_TURNS = 5

# The REST client does not wrap transport errors from requests.
TWILIO_ERRORS = (TwilioException, requests.RequestException)


class TransferError(Exception):
    """Raised when the telephony provider could not transfer the call."""

    def __init__(self, message: str, *, call_sid: Optional[str] = None):
        super().__init__(message)
        self.call_sid = call_sid

    @property
    def invalid_call(self) -> bool:
        lowered = str(self).lower()
        return any(marker in lowered for marker in INVALID_CALL_MARKERS)


class TransferOutcome(str, Enum):
    REDIRECTED = "redirected"
    AGENT_DIALED = "agent_dialed"


class TransferStatus(str, Enum):
    ABORTED = "aborted"
    TRANSFERRED = "transferred"
    FAILED = "failed"


@dataclass(frozen=True)
class TransferResult:
    status: TransferStatus
    call_sid: Optional[str] = None
    attempts: int = 0
    outcome: Optional[TransferOutcome] = None


def build_transfer_twiml(agent_number: str, caller_id: str = "") -> str:
    response = VoiceResponse()
    response.say("Please hold while I connect you with a support specialist.")
    dial = Dial(caller_id=caller_id) if caller_id else Dial()
    dial.number(agent_number)
    response.append(dial)
    response.say(
        "I'm sorry, but our support team is unavailable at the moment. "
        "Please try calling back during business hours."
    )
    return str(response)


def build_agent_notice_twiml() -> str:
    response = VoiceResponse()
    response.say("Connecting you to a customer who needs assistance.")
    return str(response)


def build_briefing(state: ConversationState, turns: int = BRIEFING_TURNS) -> str:
    recent = "\n".join(
        f"{'Customer' if t.role == Role.USER else 'AI'}: {t.text}"
        for t in state.transcript[-turns:]
    )
    return (
        "Call transferred from AI assistant.\n"
        f"Customer Email: {state.caller.email or 'Not provided'}\n"
        f"Customer Phone: {state.caller.phone or 'Not provided'}\n"
        "Recent Conversation:\n"
        f"{recent}"
    )


def apology_text(support_number: str, *, invalid_call: bool) -> str:
    text = "I'm sorry, I'm having trouble connecting you with a specialist. "
    if invalid_call:
        text += "There seems to be an issue with the call connection. "
    return text + f"Please try calling our support line directly at {support_number}"


class TwilioTelephony:
    """Twilio REST operations used by call transfer."""

    def __init__(self, config: Any, client: Optional[TwilioClient] = None):
        self.config = config
        self._client = client

    @property
    def client(self) -> TwilioClient:
        if self._client is None:
            self._client = TwilioClient(
                self.config.twilio_account_sid,
                self.config.twilio_auth_token,
            )
        return self._client

    async def transfer_call(self, call_sid: str, briefing: str) -> TransferOutcome:
        return await asyncio.to_thread(self._transfer_sync, call_sid, briefing)

    async def resolve_call_sid(self, stream_sid: str) -> Optional[str]:
        """
        Best-effort lookup of the call behind a media stream.

        Twilio has no stream -> call index, so this lists in-progress calls and
        picks the only one, or the most recently created. It can pick the wrong
        call when several are live.
        """
        try:
            return await asyncio.to_thread(self._resolve_sync)
        except TWILIO_ERRORS as e:
            logger.error("Call SID lookup failed", stream_sid=stream_sid, error=str(e))
            return None

    def _resolve_sync(self) -> Optional[str]:
        calls = self.client.calls.list(status="in-progress")
        if not calls:
            return None
        if len(calls) == 1:
            return calls[0].sid
        logger.warning("Multiple in-progress calls; choosing most recent", count=len(calls))
        latest = max(calls, key=lambda c: c.date_created.timestamp() if c.date_created else 0.0)
        return latest.sid

    def _transfer_sync(self, call_sid: str, briefing: str) -> TransferOutcome:
        if not call_sid.startswith("CA"):
            logger.warning("Call SID has unexpected format", call_sid=call_sid)

        logger.info("Transfer briefing", call_sid=call_sid, briefing=briefing)

        try:
            return self._redirect_sync(call_sid)
        except (TransferError, *TWILIO_ERRORS) as e:
            redirect_error = e
        logger.warning("Call redirect failed, dialing agent directly", call_sid=call_sid, error=str(redirect_error))

        try:
            self.client.calls.create(
                to=self.config.support_agent_number,
                from_=self.config.twilio_phone_number,
                twiml=build_agent_notice_twiml(),
            )
        except TWILIO_ERRORS as alt_error:
            logger.error("Outbound agent call failed", error=str(alt_error))
            if isinstance(redirect_error, TransferError):
                raise redirect_error
            raise TransferError(f"Twilio request failed: {redirect_error}", call_sid=call_sid) from redirect_error
        return TransferOutcome.AGENT_DIALED

    def _redirect_sync(self, call_sid: str) -> TransferOutcome:
        try:
            call = self.client.calls(call_sid).fetch()
        except TwilioRestException as e:
            raise TransferError(f"Call {call_sid} not found or not accessible", call_sid=call_sid) from e

        if call.status not in ("in-progress", "ringing"):
            logger.warning("Call may not support transfer", call_sid=call_sid, status=call.status)

        self.client.calls(call_sid).update(
            twiml=build_transfer_twiml(self.config.support_agent_number, self.config.twilio_phone_number)
        )
        logger.info("Call redirected to agent", call_sid=call_sid)
        return TransferOutcome.REDIRECTED


Speak = Callable[[str], Awaitable[None]]


class CallTransferOrchestrator:
    def __init__(
        self,
        telephony: TwilioTelephony,
        store: TranscriptStore,
        config: Any,
        *,
        registry: Optional[TransferRegistry] = None,
        speak: Optional[Speak] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._telephony = telephony
        self._store = store
        self.config = config
        self._registry = registry
        self._speak = speak
        self._sleep = sleep

    async def transfer(self, session: Any, verdict: ForwardingVerdict, *, channel_open: bool) -> TransferResult:
        log = logger.bind(session_id=session.session_id, call_sid=session.call_sid, reason=verdict.reason)

        if not session.call_sid or not channel_open:
            log.warning("Transfer precondition failed", has_call_sid=bool(session.call_sid), channel_open=channel_open)
            self._store.append_turn(Role.ASSISTANT, PRECONDITION_TEXT, notify=False)
            return TransferResult(status=TransferStatus.ABORTED, call_sid=session.call_sid)

        log.info("Call transfer initiated")

        if session.assistant_in_flight:
            await self._sleep(self.config.transfer_grace_seconds)

        if not self._already_acknowledged():
            self._store.append_turn(Role.ASSISTANT, ACKNOWLEDGEMENT_TEXT, notify=False)
            await self._say(ACKNOWLEDGEMENT_TEXT)

        briefing = build_briefing(session.state)
        await self._sleep(self.config.transfer_pause_seconds)

        call_sid = session.call_sid
        attempts = 1
        try:
            outcome = await self._telephony.transfer_call(call_sid, briefing)
        except TransferError as first_error:
            log.warning("Transfer failed, re-resolving call SID", error=str(first_error))
            fresh_sid = await self._telephony.resolve_call_sid(session.stream_sid)
            if not fresh_sid or fresh_sid == call_sid:
                return await self._give_up(session, first_error, attempts)

            session.call_sid = fresh_sid
            if self._registry is not None:
                self._registry.mark_attempted(fresh_sid)
            call_sid = fresh_sid
            attempts += 1
            try:
                outcome = await self._telephony.transfer_call(fresh_sid, briefing)
            except TransferError as retry_error:
                return await self._give_up(session, retry_error, attempts)

        session.state.mark_requires_followup()
        log.info("Call transferred", outcome=outcome.value, attempts=attempts)
        return TransferResult(
            status=TransferStatus.TRANSFERRED,
            call_sid=call_sid,
            attempts=attempts,
            outcome=outcome,
        )

    def _already_acknowledged(self) -> bool:
        for turn in reversed(self._store.recent_turns(2)):
            if turn.role != Role.ASSISTANT:
                continue
            lowered = turn.text.lower()
            return any(marker in lowered for marker in ACKNOWLEDGEMENT_MARKERS)
        return False

    async def _give_up(self, session: Any, error: TransferError, attempts: int) -> TransferResult:
        logger.error(
            "Call transfer failed",
            session_id=session.session_id,
            call_sid=session.call_sid,
            attempts=attempts,
            error=str(error),
        )
        message = apology_text(self.config.support_agent_number, invalid_call=error.invalid_call)
        self._store.append_turn(Role.ASSISTANT, message, notify=False)
        await self._say(message)
        return TransferResult(status=TransferStatus.FAILED, call_sid=session.call_sid, attempts=attempts)

    async def _say(self, text: str) -> None:
        if self._speak is None:
            return
        try:
            await self._speak(text)
        except Exception as e:
            logger.warning("Failed to voice transfer message", error=str(e))
