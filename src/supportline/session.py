"""
Per-call session state.

One `CallSession` exists per Twilio media stream. The realtime pipeline is the
only writer of the media clock and assistant-item fields.
"""

from __future__ import annotations

import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Optional

from src.supportline.transcript import ConversationState


class SessionPhase(str, Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class CallSession:
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    stream_sid: str = ""
    call_sid: Optional[str] = None
    phase: SessionPhase = SessionPhase.CONNECTING
    state: ConversationState = field(default_factory=ConversationState)

    # Milliseconds since stream start, from Twilio media timestamps.
    latest_media_timestamp: int = 0
    response_start_timestamp: Optional[int] = None
    last_assistant_item_id: Optional[str] = None
    outbound_marks: Deque[str] = field(default_factory=deque)
    response_complete: bool = False

    @property
    def assistant_in_flight(self) -> bool:
        return self.last_assistant_item_id is not None

    @property
    def is_open(self) -> bool:
        return self.phase in (SessionPhase.CONNECTING, SessionPhase.ACTIVE)

    def on_assistant_audio(self, item_id: Optional[str]) -> None:
        self.response_complete = False
        if self.response_start_timestamp is None:
            self.response_start_timestamp = self.latest_media_timestamp
        if item_id:
            self.last_assistant_item_id = item_id

    def elapsed_since_response_start(self) -> int:
        if self.response_start_timestamp is None:
            return 0
        return self.latest_media_timestamp - self.response_start_timestamp

    def reset_assistant_playback(self) -> None:
        self.outbound_marks.clear()
        self.last_assistant_item_id = None
        self.response_start_timestamp = None
        self.response_complete = False

    def on_response_done(self) -> None:
        # Audio can still be queued at Twilio; playback ends when its marks come back.
        self.response_complete = True
        self._end_playback_if_drained()

    def acknowledge_mark(self) -> Optional[str]:
        if not self.outbound_marks:
            return None
        name = self.outbound_marks.popleft()
        self._end_playback_if_drained()
        return name

    def _end_playback_if_drained(self) -> None:
        if self.response_complete and not self.outbound_marks:
            self.last_assistant_item_id = None
            self.response_start_timestamp = None
            self.response_complete = False
