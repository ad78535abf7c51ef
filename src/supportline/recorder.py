"""
Per-call audio recording.

Caller frames (Twilio inbound) and assistant frames (Realtime audio deltas) are
captured with their arrival time. At call end they are ordered by time, decoded
from mu-law and written as an 8kHz mono WAV file.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, List, Optional

import structlog

from src.supportline.audio import ulaw_to_wav

logger = structlog.get_logger(__name__)


class NoAudioRecorded(Exception):
    """The call ended without any captured audio."""


class FrameSource(str, Enum):
    CALLER = "caller"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class RecordedFrame:
    source: FrameSource
    payload: bytes
    timestamp: float


def record(frames: Iterable[RecordedFrame]) -> bytes:
    """
    Render frames into WAV bytes.

    Frames are ordered by arrival time; ties keep insertion order.

    Raises:
        NoAudioRecorded: If there are no non-empty frames
    """
    ordered = sorted((f for f in frames if f.payload), key=lambda f: f.timestamp)
    if not ordered:
        raise NoAudioRecorded("No audio frames recorded")
    return ulaw_to_wav(b"".join(f.payload for f in ordered))


class CallRecorder:
    def __init__(
        self,
        call_id: str,
        recordings_dir: str = "recordings",
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.call_id = call_id
        self.recordings_dir = Path(recordings_dir)
        self._clock = clock
        self._frames: List[RecordedFrame] = []
        self._finished_path: Optional[Path] = None

    @property
    def frame_count(self) -> int:
        return len(self._frames)

    def add_caller_frame(self, payload: bytes) -> None:
        self._add(FrameSource.CALLER, payload)

    def add_assistant_frame(self, payload: bytes) -> None:
        self._add(FrameSource.ASSISTANT, payload)

    def _add(self, source: FrameSource, payload: bytes) -> None:
        if self._finished_path is not None or not payload:
            return
        self._frames.append(RecordedFrame(source=source, payload=payload, timestamp=self._clock()))

    def finish(self) -> Path:
        """
        Write the recording to `<recordings_dir>/call_<id>_<ts>.wav`.

        Raises:
            NoAudioRecorded: If nothing was captured
            OSError: If the file cannot be written
        """
        if self._finished_path is not None:
            return self._finished_path

        wav_bytes = record(self._frames)
        self.recordings_dir.mkdir(parents=True, exist_ok=True)
        path = self.recordings_dir / f"call_{self.call_id}_{int(self._clock() * 1000)}.wav"
        path.write_bytes(wav_bytes)

        self._finished_path = path
        logger.info(
            "Call recording saved",
            call_id=self.call_id,
            path=str(path),
            frames=len(self._frames),
            bytes=len(wav_bytes),
        )
        self._frames.clear()
        return path
