"""
Audio utilities for the Twilio <-> OpenAI Realtime bridge.

Both legs speak g711 mu-law at 8kHz, so the live path never transcodes.
Conversion to PCM only happens when a call recording is written out.
"""

import audioop
import io
import wave
from typing import Iterable

TWILIO_SAMPLE_RATE = 8000
FRAME_DURATION_MS = 20
TWILIO_FRAME_SIZE = int(TWILIO_SAMPLE_RATE * FRAME_DURATION_MS / 1000)  # 160 bytes for 20ms
ULAW_SILENCE_BYTE = 0xFF


def ulaw_to_linear16(ulaw_bytes: bytes) -> bytes:
    """Expand 8kHz mu-law to 16-bit linear PCM at the same rate."""
    return audioop.ulaw2lin(ulaw_bytes, 2) if ulaw_bytes else b""


def create_silence_ulaw(duration_ms: int) -> bytes:
    """`duration_ms` of mu-law silence, e.g. 20ms -> one 160 byte Twilio frame."""
    return bytes([ULAW_SILENCE_BYTE]) * (TWILIO_SAMPLE_RATE * duration_ms // 1000)


def is_silence_frame(frame: bytes) -> bool:
    """True when every byte of a mu-law frame is the silence sentinel."""
    if not frame:
        return False
    return frame.count(ULAW_SILENCE_BYTE) == len(frame)


def all_silence(frames: Iterable[bytes]) -> bool:
    return all(is_silence_frame(frame) for frame in frames)


def write_wav_mono_pcm16(pcm_bytes: bytes, sample_rate: int) -> bytes:
    """Create a mono 16-bit PCM WAV byte string from PCM bytes."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(int(sample_rate))
        wf.writeframes(pcm_bytes or b"")
    return buf.getvalue()


def ulaw_to_wav(ulaw_bytes: bytes) -> bytes:
    """Convert Twilio 8kHz mu-law bytes into an 8kHz mono PCM16 WAV byte string."""
    return write_wav_mono_pcm16(ulaw_to_linear16(ulaw_bytes), TWILIO_SAMPLE_RATE)
