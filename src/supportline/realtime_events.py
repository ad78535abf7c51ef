"""
OpenAI Realtime wire events.

Inbound events are parsed into one dataclass per message kind. Anything the
bridge does not act on becomes `UnrecognizedEvent`, which the caller logs and
ignores. Outbound commands are built as plain dicts and encoded by the send loop.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union

import msgspec

from src.supportline.confidence import coerce_confidence

decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()


class RealtimeEventType(str, Enum):
    SPEECH_PHRASE = "speech.phrase"
    SPEECH_STARTED = "input_audio_buffer.speech_started"
    SPEECH_STOPPED = "input_audio_buffer.speech_stopped"
    INPUT_TRANSCRIPTION_COMPLETED = "conversation.item.input_audio_transcription.completed"
    RESPONSE_TEXT = "response.text"
    RESPONSE_TEXT_DONE = "response.text.done"
    RESPONSE_AUDIO_TRANSCRIPT_DONE = "response.audio_transcript.done"
    RESPONSE_AUDIO_DELTA = "response.audio.delta"
    RESPONSE_AUDIO_DONE = "response.audio.done"
    RESPONSE_DONE = "response.done"
    ITEM_TRUNCATED = "conversation.item.truncated"
    SESSION_CREATED = "session.created"
    SESSION_UPDATED = "session.updated"
    ERROR = "error"


@dataclass(frozen=True)
class SpeechPhrase:
    """Caller recognition result (partial or final)."""
    text: str
    confidence: Optional[float] = None
    is_final: bool = False
    duration: Optional[float] = None
    start_time: Optional[Any] = None
    end_time: Optional[Any] = None


@dataclass(frozen=True)
class CallerTranscript:
    """Finalized caller transcript produced by the backend's input transcription."""
    text: str
    item_id: Optional[str] = None


@dataclass(frozen=True)
class AssistantText:
    """Finalized assistant utterance text."""
    text: str
    confidence: Optional[float] = None


@dataclass(frozen=True)
class AudioDelta:
    delta: str  # base64 g711 mu-law
    item_id: Optional[str] = None
    response_id: Optional[str] = None


@dataclass(frozen=True)
class SpeechStarted:
    audio_start_ms: Optional[int] = None
    item_id: Optional[str] = None


@dataclass(frozen=True)
class SpeechStopped:
    audio_end_ms: Optional[int] = None


@dataclass(frozen=True)
class AudioDone:
    item_id: Optional[str] = None


@dataclass(frozen=True)
class ResponseDone:
    response_id: Optional[str] = None
    status: Optional[str] = None


@dataclass(frozen=True)
class TruncateAck:
    item_id: Optional[str] = None
    audio_end_ms: Optional[int] = None


@dataclass(frozen=True)
class SessionAck:
    kind: str


@dataclass(frozen=True)
class RealtimeError:
    message: str
    code: Optional[str] = None


@dataclass(frozen=True)
class UnrecognizedEvent:
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)


RealtimeEvent = Union[
    SpeechPhrase,
    CallerTranscript,
    AssistantText,
    AudioDelta,
    SpeechStarted,
    SpeechStopped,
    AudioDone,
    ResponseDone,
    TruncateAck,
    SessionAck,
    RealtimeError,
    UnrecognizedEvent,
]


def _str_or_none(value: Any) -> Optional[str]:
    if isinstance(value, str) and value:
        return value
    return None


def _float_or_none(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _int_or_none(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_realtime_event(raw: Union[str, bytes]) -> RealtimeEvent:
    """
    Parse one Realtime server event.

    Raises:
        ValueError: If the payload is not a JSON object
    """
    try:
        message = decoder.decode(raw.encode("utf-8") if isinstance(raw, str) else raw)
    except msgspec.DecodeError as e:
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError("Invalid event: expected a JSON object")

    event_type = str(message.get("type") or "")
    try:
        kind = RealtimeEventType(event_type)
    except ValueError:
        return UnrecognizedEvent(type=event_type, payload=message)

    if kind == RealtimeEventType.SPEECH_PHRASE:
        duration = message.get("duration")
        return SpeechPhrase(  # start/end times are passed through as sent
            text=str(message.get("text") or ""),
            confidence=coerce_confidence(message.get("confidence")),
            is_final=bool(message.get("is_final", False)),
            duration=_float_or_none(duration),
            start_time=message.get("start_time"),
            end_time=message.get("end_time"),
        )

    if kind == RealtimeEventType.INPUT_TRANSCRIPTION_COMPLETED:
        return CallerTranscript(
            text=str(message.get("transcript") or ""),
            item_id=_str_or_none(message.get("item_id")),
        )

    if kind in (
        RealtimeEventType.RESPONSE_TEXT,
        RealtimeEventType.RESPONSE_TEXT_DONE,
        RealtimeEventType.RESPONSE_AUDIO_TRANSCRIPT_DONE,
    ):
        text = message.get("text") or message.get("transcript") or ""
        return AssistantText(text=str(text), confidence=coerce_confidence(message.get("confidence")))

    if kind == RealtimeEventType.RESPONSE_AUDIO_DELTA:
        return AudioDelta(
            delta=str(message.get("delta") or ""),
            item_id=_str_or_none(message.get("item_id")),
            response_id=_str_or_none(message.get("response_id")),
        )

    if kind == RealtimeEventType.SPEECH_STARTED:
        return SpeechStarted(
            audio_start_ms=_int_or_none(message.get("audio_start_ms")),
            item_id=_str_or_none(message.get("item_id")),
        )

    if kind == RealtimeEventType.SPEECH_STOPPED:
        return SpeechStopped(audio_end_ms=_int_or_none(message.get("audio_end_ms")))

    if kind == RealtimeEventType.RESPONSE_AUDIO_DONE:
        return AudioDone(item_id=_str_or_none(message.get("item_id")))

    if kind == RealtimeEventType.RESPONSE_DONE:
        response = message.get("response") or {}
        return ResponseDone(
            response_id=_str_or_none(response.get("id")),
            status=_str_or_none(response.get("status")),
        )

    if kind == RealtimeEventType.ITEM_TRUNCATED:
        return TruncateAck(
            item_id=_str_or_none(message.get("item_id")),
            audio_end_ms=_int_or_none(message.get("audio_end_ms")),
        )

    if kind in (RealtimeEventType.SESSION_CREATED, RealtimeEventType.SESSION_UPDATED):
        return SessionAck(kind=event_type)

    error = message.get("error") or {}
    if not isinstance(error, dict):
        error = {"message": str(error)}
    return RealtimeError(
        message=str(error.get("message") or "unknown error"),
        code=_str_or_none(error.get("code")),
    )


def session_update(
    *,
    instructions: str,
    voice: str,
    temperature: float,
    vad_threshold: float,
    prefix_padding_ms: int,
    silence_duration_ms: int,
    create_response: bool = True,
    interrupt_response: bool = True,
) -> Dict[str, Any]:
    return {
        "type": "session.update",
        "session": {
            "turn_detection": {
                "type": "server_vad",
                "threshold": min(1.0, max(0.0, float(vad_threshold))),
                "prefix_padding_ms": int(prefix_padding_ms),
                "silence_duration_ms": int(silence_duration_ms),
                "create_response": bool(create_response),
                "interrupt_response": bool(interrupt_response),
            },
            "input_audio_format": "g711_ulaw",
            "output_audio_format": "g711_ulaw",
            "voice": voice,
            "instructions": instructions,
            "modalities": ["text", "audio"],
            "temperature": float(temperature),
        },
    }


def input_audio_append(payload_b64: str) -> Dict[str, Any]:
    return {"type": "input_audio_buffer.append", "audio": payload_b64}


def conversation_item_truncate(item_id: str, audio_end_ms: int, content_index: int = 0) -> Dict[str, Any]:
    return {
        "type": "conversation.item.truncate",
        "item_id": item_id,
        "content_index": content_index,
        "audio_end_ms": max(0, int(audio_end_ms)),
    }


def response_create(instructions: Optional[str] = None) -> Dict[str, Any]:
    response: Dict[str, Any] = {"modalities": ["text", "audio"]}
    if instructions:
        response["instructions"] = instructions
    return {"type": "response.create", "response": response}


def encode_event(event: Dict[str, Any]) -> str:
    return encoder.encode(event).decode("utf-8")
