"""
Tests for call recording.
"""

import io
import wave

import pytest

from src.supportline.recorder import (
    CallRecorder,
    FrameSource,
    NoAudioRecorded,
    RecordedFrame,
    record,
)


class StepClock:
    """Seconds clock that ticks on every read."""

    def __init__(self, start: float = 1_700_000_000.0, step: float = 0.02):
        self.now = start
        self.step = step

    def __call__(self) -> float:
        value = self.now
        self.now += self.step
        return value


def read_wav(data: bytes):
    with wave.open(io.BytesIO(data), "rb") as wf:
        return wf.getnchannels(), wf.getsampwidth(), wf.getframerate(), wf.getnframes()


def test_record_orders_frames_by_time():
    frames = [
        RecordedFrame(FrameSource.ASSISTANT, b"\x00" * 160, timestamp=2.0),
        RecordedFrame(FrameSource.CALLER, b"\xff" * 160, timestamp=1.0),
    ]
    wav_bytes = record(frames)
    channels, width, rate, nframes = read_wav(wav_bytes)
    assert (channels, width, rate, nframes) == (1, 2, 8000, 320)

    with wave.open(io.BytesIO(wav_bytes), "rb") as wf:
        pcm = wf.readframes(nframes)
    # mu-law 0xFF decodes to zero amplitude, 0x00 to full scale.
    assert pcm[:320] == b"\x00" * 320
    assert pcm[320:] != b"\x00" * 320


def test_record_without_frames():
    with pytest.raises(NoAudioRecorded):
        record([])


def test_empty_payloads_are_skipped(tmp_path):
    recorder = CallRecorder("CA1", str(tmp_path))
    recorder.add_caller_frame(b"")
    assert recorder.frame_count == 0
    with pytest.raises(NoAudioRecorded):
        recorder.finish()


def test_finish_writes_wav(tmp_path):
    recorder = CallRecorder("CA789012", str(tmp_path / "recordings"), clock=StepClock())
    for _ in range(5):
        recorder.add_caller_frame(b"\xff" * 160)
        recorder.add_assistant_frame(b"\x7f" * 160)

    path = recorder.finish()

    assert path.parent == tmp_path / "recordings"
    assert path.name.startswith("call_CA789012_")
    assert path.suffix == ".wav"
    assert read_wav(path.read_bytes())[3] == 1600
    assert recorder.frame_count == 0


def test_finish_is_idempotent(tmp_path):
    recorder = CallRecorder("CA1", str(tmp_path), clock=StepClock())
    recorder.add_caller_frame(b"\xff" * 160)
    first = recorder.finish()
    recorder.add_caller_frame(b"\xff" * 160)
    assert recorder.finish() == first
    assert recorder.frame_count == 0
