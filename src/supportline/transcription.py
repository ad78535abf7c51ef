"""
Whisper transcription.

- AudioTranscriber: post-call transcription of the recording, plus an LLM pass
  that splits the text into agent/customer messages.
- RollingTranscriber: live fallback that buffers caller audio and transcribes it
  every few seconds, for when Realtime input transcription is missing.
"""

from __future__ import annotations

import re
import time
from pathlib import Path
from typing import Callable, List, Literal, Optional

import structlog
from pydantic import BaseModel, Field, ValidationError

from src.supportline.audio import ulaw_to_wav
from src.supportline.llm import ChatLLM

logger = structlog.get_logger(__name__)

WHISPER_PROMPT = (
    "This is a customer support call. The customer may be asking questions or describing technical issues."
)

HUMAN_AGENT_KEYWORDS = (
    "human",
    "agent",
    "person",
    "representative",
    "support",
    "specialist",
    "talk to",
    "speak to",
    "connect me",
    "transfer me",
    "real person",
)

WHISPER_CONFIDENCE = 0.8
WHISPER_AGENT_REQUEST_CONFIDENCE = 0.95

PARSE_SYSTEM_PROMPT = """You split a raw phone call transcript into the messages of each speaker.
The speakers are a support AI agent and a customer. The agent usually speaks first.

Rules:
- Keep the original wording. Do not summarize or correct the text.
- Keep email addresses exactly as spoken, including words like "at" and "dot".
- Alternate speakers only where the text clearly changes speaker.

Respond with JSON: {"messages": [{"role": "agent" | "customer", "text": "..."}]}"""

_SPEAKER_SPLIT_RE = re.compile(r"(?=[A-Z][a-z]+:)")
_AGENT_MARKERS = ("before i assist", "thank you", "how can i help")


class ParsedMessage(BaseModel):
    role: Literal["agent", "customer"] = Field(description="Who spoke this message")
    text: str = Field(description="Message text, verbatim")


class ParsedConversation(BaseModel):
    messages: List[ParsedMessage] = Field(default_factory=list)


def heuristic_parse(text: str) -> List[ParsedMessage]:
    """Split on `Name:` speaker labels and guess the role from agent phrasing."""
    try:
        messages: List[ParsedMessage] = []
        for segment in _SPEAKER_SPLIT_RE.split(text):
            segment = segment.strip()
            if not segment:
                continue
            lowered = segment.lower()
            role = "agent" if any(marker in lowered for marker in _AGENT_MARKERS) else "customer"
            messages.append(ParsedMessage(role=role, text=segment))
        return messages
    except Exception as e:
        logger.warning("Heuristic conversation parse failed", error=str(e))
        return [ParsedMessage(role="customer", text=text)]


class AudioTranscriber:
    def __init__(self, llm: ChatLLM):
        self._llm = llm

    async def transcribe(self, path: Path) -> str:
        """Raises on read or API failure; the caller isolates the step."""
        wav_bytes = Path(path).read_bytes()
        text = await self._llm.transcribe_wav(wav_bytes, prompt=WHISPER_PROMPT)
        logger.info("Recording transcribed", path=str(path), chars=len(text))
        return text

    async def parse_conversation(self, text: str) -> List[ParsedMessage]:
        if not text or not text.strip():
            return []

        try:
            data = await self._llm.complete_json(PARSE_SYSTEM_PROMPT, text, temperature=0.1)
            parsed = ParsedConversation.model_validate(data)
        except (ValueError, ValidationError) as e:
            logger.warning("Conversation parse returned unusable output", error=str(e))
            return heuristic_parse(text)
        except Exception as e:
            logger.warning("Conversation parse failed", error=str(e))
            return heuristic_parse(text)

        if not parsed.messages:
            return heuristic_parse(text)
        return parsed.messages


def mentions_human_agent(text: str) -> bool:
    lowered = (text or "").lower()
    return any(keyword in lowered for keyword in HUMAN_AGENT_KEYWORDS)


class RollingTranscriber:
    """
    Buffers inbound mu-law frames and transcribes them on a fixed interval.

    `add_frame` returns True when the buffer is due; the caller then awaits
    `flush()`, which drains the buffer so audio is transcribed at most once.
    """

    def __init__(
        self,
        llm: ChatLLM,
        *,
        interval_ms: int = 3000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._llm = llm
        self.interval_ms = interval_ms
        self._clock = clock
        self._buffer = bytearray()
        self._last_flush = clock()

    @property
    def buffered_bytes(self) -> int:
        return len(self._buffer)

    def add_frame(self, payload: bytes) -> bool:
        if payload:
            self._buffer.extend(payload)
        return self.is_due()

    def is_due(self) -> bool:
        if not self._buffer:
            return False
        return (self._clock() - self._last_flush) * 1000 >= self.interval_ms

    async def flush(self) -> Optional[str]:
        """Transcribe and clear the buffer. Errors are logged and yield None."""
        audio = bytes(self._buffer)
        self._buffer.clear()
        self._last_flush = self._clock()
        if not audio:
            return None

        try:
            text = await self._llm.transcribe_wav(ulaw_to_wav(audio), prompt=WHISPER_PROMPT)
        except Exception as e:
            logger.warning("Rolling transcription failed", error=str(e), audio_bytes=len(audio))
            return None

        return text or None

    @staticmethod
    def confidence_for(text: str) -> float:
        return WHISPER_AGENT_REQUEST_CONFIDENCE if mentions_human_agent(text) else WHISPER_CONFIDENCE
