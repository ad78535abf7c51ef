"""
Pytest configuration and fixtures.
"""

import asyncio
import base64
import json
import os
from typing import Any, List
from unittest.mock import patch

import pytest


@pytest.fixture(autouse=True)
def mock_env_vars(tmp_path):
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "5050",
        "LOG_LEVEL": "DEBUG",
        "TWILIO_ACCOUNT_SID": "ACtest123456789",
        "TWILIO_AUTH_TOKEN": "test_auth_token",
        "TWILIO_PHONE_NUMBER": "+15550000000",
        "OPENAI_API_KEY": "test_openai_key",
        "OPENAI_CHAT_MODEL": "gpt-4-turbo-preview",
        "ENABLE_CALL_FORWARDING": "true",
        "SUPPORT_AGENT_NUMBER": "+15551112222",
        "TRANSFER_GRACE_SECONDS": "0",
        "TRANSFER_PAUSE_SECONDS": "0",
        "SESSION_SETTLE_MS": "0",
        "WHISPER_FALLBACK_ENABLED": "false",
        "RECORDINGS_DIR": str(tmp_path / "recordings"),
        "TICKETING_ENABLED": "true",
        "KAYAKO_API_URL": "https://kayako.test/api/v1",
        "KAYAKO_USERNAME": "agent@example.com",
        "KAYAKO_PASSWORD": "secret",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.supportline.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


@pytest.fixture
def config():
    from src.supportline.config import get_config
    return get_config()


@pytest.fixture
def registry():
    from src.supportline.forwarding import TransferRegistry
    return TransferRegistry()


class FakeClock:
    """Millisecond clock advanced by hand."""

    def __init__(self, start: float = 1_700_000_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


class FakeRealtimeSocket:
    """Stands in for the OpenAI Realtime websocket."""

    def __init__(self):
        self.sent: List[dict] = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, message: str) -> None:
        self.sent.append(json.loads(message))

    async def close(self) -> None:
        self.closed = True
        await self._incoming.put(None)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Any:
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item

    def end_stream(self) -> None:
        """The backend hangs up."""
        self._incoming.put_nowait(None)

    def sent_types(self) -> List[str]:
        return [m.get("type") for m in self.sent]


@pytest.fixture
def realtime_socket():
    return FakeRealtimeSocket()


@pytest.fixture
def sample_ulaw_audio():
    """Generate sample mu-law audio (silence)."""
    return b"\xff" * 160  # 20ms of silence


@pytest.fixture
def twilio_start_message():
    """Sample Twilio start message."""
    return json.dumps({
        "event": "start",
        "streamSid": "MZ123456",
        "start": {
            "streamSid": "MZ123456",
            "callSid": "CA789012",
            "accountSid": "AC345678",
            "tracks": ["inbound"],
            "customParameters": {"caller": "+15557654321"},
        }
    })


def media_message(payload: bytes, timestamp: int, stream_sid: str = "MZ123456") -> str:
    return json.dumps({
        "event": "media",
        "streamSid": stream_sid,
        "media": {
            "track": "inbound",
            "chunk": 1,
            "timestamp": str(timestamp),
            "payload": base64.b64encode(payload).decode(),
        }
    })


@pytest.fixture
def twilio_media_message(sample_ulaw_audio):
    """Sample Twilio media message."""
    return media_message(sample_ulaw_audio, 12345)


@pytest.fixture
def twilio_stop_message():
    """Sample Twilio stop message."""
    return json.dumps({
        "event": "stop",
        "streamSid": "MZ123456",
    })
