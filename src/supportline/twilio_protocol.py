"""
Twilio Media Streams wire format.

Inbound (Twilio -> bridge): connected, start, media, mark, stop.
Outbound (bridge -> Twilio): media, mark, clear.

Audio on both directions is base64 g711 mu-law at 8kHz. Media timestamps are
milliseconds since the stream started and drive barge-in arithmetic.
"""

import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

import msgspec


decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()


class TwilioEventType(str, Enum):
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    MARK = "mark"
    STOP = "stop"


@dataclass
class TwilioStartEvent:
    """Stream metadata, including custom <Parameter> values from the TwiML."""
    stream_sid: str
    call_sid: str
    account_sid: str = ""
    tracks: List[str] = field(default_factory=list)
    custom_parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStartEvent":
        body = message.get("start") or {}
        return cls(
            stream_sid=body.get("streamSid") or message.get("streamSid", ""),
            call_sid=body.get("callSid", ""),
            account_sid=body.get("accountSid", ""),
            tracks=list(body.get("tracks") or []),
            custom_parameters=body.get("customParameters") or {},
        )

    @property
    def caller_phone(self) -> Optional[str]:
        for key in ("caller", "from", "From", "Caller"):
            value = self.custom_parameters.get(key)
            if value:
                return str(value)
        return None


@dataclass
class TwilioMediaEvent:
    stream_sid: str
    timestamp: int
    payload: bytes  # mu-law
    payload_b64: str = ""  # as received, forwarded to the speech backend unchanged
    track: str = "inbound"

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMediaEvent":
        body = message.get("media") or {}
        encoded = body.get("payload") or ""

        try:
            audio = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Invalid media payload: {e}")

        raw_ts = body.get("timestamp")
        try:
            timestamp = int(raw_ts or 0)
        except (TypeError, ValueError):
            raise ValueError(f"Invalid media timestamp: {raw_ts!r}")

        return cls(
            stream_sid=message.get("streamSid", ""),
            timestamp=timestamp,
            payload=audio,
            payload_b64=encoded,
            track=body.get("track", "inbound"),
        )


@dataclass
class TwilioMarkEvent:
    """Playback of a previously sent mark has completed."""
    stream_sid: str
    name: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMarkEvent":
        return cls(
            stream_sid=message.get("streamSid", ""),
            name=(message.get("mark") or {}).get("name", ""),
        )


@dataclass
class TwilioStopEvent:
    stream_sid: str
    call_sid: str = ""

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStopEvent":
        return cls(
            stream_sid=message.get("streamSid", ""),
            call_sid=(message.get("stop") or {}).get("callSid", ""),
        )


TwilioEvent = Union[TwilioStartEvent, TwilioMediaEvent, TwilioMarkEvent, TwilioStopEvent, Dict[str, Any]]

_PARSERS: Dict[TwilioEventType, Callable[[Dict[str, Any]], TwilioEvent]] = {
    TwilioEventType.START: TwilioStartEvent.from_message,
    TwilioEventType.MEDIA: TwilioMediaEvent.from_message,
    TwilioEventType.MARK: TwilioMarkEvent.from_message,
    TwilioEventType.STOP: TwilioStopEvent.from_message,
}


def parse_twilio_message(raw_message: Union[str, bytes]) -> tuple[TwilioEventType, TwilioEvent]:
    """
    Decode one Media Streams frame.

    `connected` (and any other event without a dedicated type) is returned as
    the decoded dict.

    Raises:
        ValueError: On invalid JSON, a non-object payload, an unknown event name,
            or a media frame with a bad payload or timestamp
    """
    data = raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message
    try:
        message = decoder.decode(data)
    except msgspec.DecodeError as e:
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError("Invalid message: expected a JSON object")

    name = message.get("event", "")
    try:
        event_type = TwilioEventType(name)
    except ValueError:
        raise ValueError(f"Unknown event type: {name}")

    parser = _PARSERS.get(event_type)
    return event_type, parser(message) if parser else message


def _encode(event: str, stream_sid: str, **body: Any) -> str:
    return encoder.encode({"event": event, "streamSid": stream_sid, **body}).decode("utf-8")


def create_media_message(stream_sid: str, audio_payload: Union[bytes, str]) -> str:
    """
    Outbound audio frame.

    `audio_payload` is raw mu-law bytes, or a base64 string that is passed
    through as-is (Realtime audio deltas are already encoded).
    """
    if isinstance(audio_payload, bytes):
        audio_payload = base64.b64encode(audio_payload).decode("utf-8")
    return _encode("media", stream_sid, media={"payload": audio_payload})


def create_mark_message(stream_sid: str, name: str) -> str:
    """Twilio echoes the mark back once all audio queued before it has played."""
    return _encode("mark", stream_sid, mark={"name": name})


def create_clear_message(stream_sid: str) -> str:
    """Drop all audio Twilio has buffered but not yet played."""
    return _encode("clear", stream_sid)


def create_error_message(error: str) -> str:
    """Best-effort error signal for the telephony side when the speech backend fails."""
    return encoder.encode({"event": "error", "error": error}).decode("utf-8")
