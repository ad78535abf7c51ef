"""
Barge-in: the caller starts talking while assistant audio is still playing.

The in-flight assistant item is truncated at the point the caller heard up to,
Twilio's playback buffer is cleared, and the session forgets the item so the
next response starts clean.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from src.supportline.realtime_events import conversation_item_truncate
from src.supportline.session import CallSession
from src.supportline.twilio_protocol import create_clear_message

logger = structlog.get_logger(__name__)

SendRealtime = Callable[[Dict[str, Any]], Awaitable[None]]
SendTwilio = Callable[[str], Awaitable[None]]


@dataclass(frozen=True)
class BargeInOutcome:
    interrupted: bool
    truncated_item_id: Optional[str] = None
    audio_end_ms: Optional[int] = None


class BargeInController:
    def __init__(
        self,
        session: CallSession,
        send_realtime: SendRealtime,
        send_twilio: SendTwilio,
        *,
        min_elapsed_ms: int = 100,
    ):
        self._session = session
        self._send_realtime = send_realtime
        self._send_twilio = send_twilio
        self.min_elapsed_ms = min_elapsed_ms

    async def on_user_speech_started(self) -> BargeInOutcome:
        session = self._session
        item_id = session.last_assistant_item_id
        if item_id is None:
            return BargeInOutcome(interrupted=False)

        elapsed = session.elapsed_since_response_start()
        truncated = False
        if elapsed > self.min_elapsed_ms:
            await self._send_realtime(conversation_item_truncate(item_id, elapsed))
            truncated = True
        else:
            logger.debug("Skipping truncate for barely-started response", item_id=item_id, elapsed_ms=elapsed)

        if session.stream_sid:
            await self._send_twilio(create_clear_message(session.stream_sid))

        session.reset_assistant_playback()

        logger.info(
            "Barge-in handled",
            item_id=item_id,
            truncated=truncated,
            audio_end_ms=elapsed if truncated else None,
        )
        return BargeInOutcome(
            interrupted=True,
            truncated_item_id=item_id if truncated else None,
            audio_end_ms=elapsed if truncated else None,
        )
