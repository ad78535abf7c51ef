"""
Per-session speech segmentation.

Tracks the caller utterance currently in flight (at most one). Segments open on
the backend's speech-started signal, debounced so bursts of duplicate signals
collapse into one, and close on speech-stopped or when the tail of the inbound
audio has been pure mu-law silence for long enough.
"""

from __future__ import annotations

import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Deque, Optional

import structlog

from src.supportline.audio import all_silence
from src.supportline.transcript import SEGMENT_PLACEHOLDER_PREFIX, TranscriptStore

logger = structlog.get_logger(__name__)


class SegmenterState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"


def _now_ms() -> float:
    return time.time() * 1000


def _iso(ms: float) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


@dataclass
class SpeechSegment:
    id: str
    start_time: float
    end_time: Optional[float] = None
    transcription: str = ""
    confidence: float = 0.0
    is_final: bool = False
    frame_count: int = 0
    recent_frames: Deque[bytes] = field(default_factory=deque)

    @property
    def duration_s(self) -> float:
        if self.end_time is None:
            return 0.0
        return max(0.0, (self.end_time - self.start_time) / 1000)


class SpeechSegmenter:
    def __init__(
        self,
        store: TranscriptStore,
        *,
        debounce_ms: int = 500,
        silence_min_frames: int = 50,
        silence_window_frames: int = 20,
        clock: Callable[[], float] = _now_ms,
    ):
        self._store = store
        self.debounce_ms = debounce_ms
        self.silence_min_frames = silence_min_frames
        self.silence_window_frames = silence_window_frames
        self._clock = clock

        self._segment: Optional[SpeechSegment] = None
        self._last_start_ms: Optional[float] = None
        self.segments_started = 0

    @property
    def state(self) -> SegmenterState:
        return SegmenterState.ACTIVE if self._segment is not None else SegmenterState.IDLE

    @property
    def active_segment(self) -> Optional[SpeechSegment]:
        return self._segment

    def start_segment(self) -> Optional[SpeechSegment]:
        """
        Handle a speech-started signal.

        Returns the newly allocated segment, or None if the signal fell inside
        the debounce window (in which case nothing else changes).
        """
        now = self._clock()
        if self._last_start_ms is not None and now - self._last_start_ms < self.debounce_ms:
            logger.debug("Speech start debounced", since_last_ms=round(now - self._last_start_ms))
            return None

        self._last_start_ms = now
        if self._segment is not None:
            self.end_segment()

        self._segment = SpeechSegment(
            id=uuid.uuid4().hex,
            start_time=now,
            recent_frames=deque(maxlen=max(1, self.silence_window_frames)),
        )
        self.segments_started += 1
        logger.debug("Speech segment started", segment_id=self._segment.id)
        return self._segment

    def update_recognition(self, text: str, confidence: Optional[float], is_final: bool) -> bool:
        """Last-write-wins update of the live segment. False when no segment is active."""
        if self._segment is None:
            return False
        self._segment.transcription = text
        self._segment.confidence = confidence or 0.0
        self._segment.is_final = is_final
        return True

    def observe_frame(self, frame: bytes) -> bool:
        """
        Feed one inbound audio frame.

        Returns True when the silence heuristic closed the active segment.
        """
        segment = self._segment
        if segment is None:
            return False

        segment.frame_count += 1
        segment.recent_frames.append(frame)

        if segment.frame_count <= self.silence_min_frames:
            return False
        if len(segment.recent_frames) < self.silence_window_frames:
            return False
        if not all_silence(segment.recent_frames):
            return False

        logger.info("Silence detected, closing speech segment", segment_id=segment.id)
        self.end_segment()
        return True

    def end_segment(self) -> Optional[SpeechSegment]:
        segment = self._segment
        if segment is None:
            return None

        self._segment = None
        segment.end_time = self._clock()
        segment.is_final = True

        duration = segment.duration_s
        if not self._store.has_real_observation_between(segment.start_time, segment.end_time):
            self._store.add_observation(
                f"{SEGMENT_PLACEHOLDER_PREFIX} - Duration: {duration:.1f}s]",
                confidence=segment.confidence,
                is_final=True,
                duration=duration,
                start_time=_iso(segment.start_time),
                end_time=_iso(segment.end_time),
                timestamp=segment.start_time,
            )

        logger.info(
            "Speech segment ended",
            segment_id=segment.id,
            duration_s=round(duration, 1),
            transcription=segment.transcription or None,
        )
        return segment
