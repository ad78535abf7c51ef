"""
Tests for barge-in handling.
"""

import json
from unittest.mock import AsyncMock

import pytest

from src.supportline.barge_in import BargeInController
from src.supportline.session import CallSession


@pytest.fixture
def session():
    s = CallSession(stream_sid="MZ123", call_sid="CA456")
    s.latest_media_timestamp = 1000
    return s


@pytest.mark.asyncio
async def test_no_item_in_flight_is_noop(session):
    send_realtime = AsyncMock()
    send_twilio = AsyncMock()
    controller = BargeInController(session, send_realtime, send_twilio)

    outcome = await controller.on_user_speech_started()

    assert outcome.interrupted is False
    send_realtime.assert_not_awaited()
    send_twilio.assert_not_awaited()


@pytest.mark.asyncio
async def test_truncates_then_clears(session):
    send_realtime = AsyncMock()
    send_twilio = AsyncMock()
    controller = BargeInController(session, send_realtime, send_twilio)

    session.on_assistant_audio("item_1")  # response starts at t=1000
    session.outbound_marks.extend(["responsePart", "responsePart"])
    session.latest_media_timestamp = 1750

    outcome = await controller.on_user_speech_started()

    assert outcome.interrupted is True
    assert outcome.truncated_item_id == "item_1"
    assert outcome.audio_end_ms == 750

    truncate = send_realtime.await_args.args[0]
    assert truncate == {
        "type": "conversation.item.truncate",
        "item_id": "item_1",
        "content_index": 0,
        "audio_end_ms": 750,
    }
    clear = json.loads(send_twilio.await_args.args[0])
    assert clear == {"event": "clear", "streamSid": "MZ123"}

    assert session.last_assistant_item_id is None
    assert session.response_start_timestamp is None
    assert len(session.outbound_marks) == 0


@pytest.mark.asyncio
async def test_barely_started_response_is_cleared_without_truncate(session):
    send_realtime = AsyncMock()
    send_twilio = AsyncMock()
    controller = BargeInController(session, send_realtime, send_twilio, min_elapsed_ms=100)

    session.on_assistant_audio("item_2")
    session.latest_media_timestamp = 1060

    outcome = await controller.on_user_speech_started()

    assert outcome.interrupted is True
    assert outcome.truncated_item_id is None
    send_realtime.assert_not_awaited()
    send_twilio.assert_awaited_once()
    assert session.assistant_in_flight is False


@pytest.mark.asyncio
async def test_played_out_response_is_not_interrupted(session):
    send_realtime = AsyncMock()
    send_twilio = AsyncMock()
    controller = BargeInController(session, send_realtime, send_twilio)

    session.on_assistant_audio("item_3")
    session.outbound_marks.append("responsePart")
    session.on_response_done()
    session.acknowledge_mark()

    outcome = await controller.on_user_speech_started()

    assert outcome.interrupted is False
    send_twilio.assert_not_awaited()


def test_response_done_without_queued_audio_ends_playback(session):
    session.on_assistant_audio("item_4")
    session.on_response_done()
    assert session.assistant_in_flight is False


def test_new_audio_after_done_keeps_item_in_flight(session):
    session.on_assistant_audio("item_5")
    session.outbound_marks.append("responsePart")
    session.on_response_done()
    session.on_assistant_audio("item_6")
    session.acknowledge_mark()
    assert session.last_assistant_item_id == "item_6"
