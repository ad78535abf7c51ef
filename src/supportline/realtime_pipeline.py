"""
OpenAI Realtime (speech-to-speech) pipeline for Twilio Media Streams.

Twilio (g711_ulaw 8kHz) -> OpenAI Realtime -> Twilio (g711_ulaw 8kHz)

One pipeline per call. Alongside the audio relay it keeps the transcript,
segments caller speech, handles barge-in, runs forwarding evaluation in a
separate worker task, and on close records, transcribes, summarizes and files
a support ticket.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
from typing import Any, Awaitable, Callable, Optional, Set

import structlog
import websockets
from websockets.exceptions import ConnectionClosed

from src.supportline.audio import create_silence_ulaw, FRAME_DURATION_MS
from src.supportline.barge_in import BargeInController
from src.supportline.confidence import ConfidenceThresholds
from src.supportline.config import Config, get_config
from src.supportline.forwarding import ForwardingAdjudicator, ForwardingEngine, TransferRegistry, get_transfer_registry
from src.supportline.llm import ChatLLM
from src.supportline.prompt_utils import build_system_instructions
from src.supportline.realtime_events import (
    AssistantText,
    AudioDelta,
    AudioDone,
    CallerTranscript,
    RealtimeError,
    RealtimeEvent,
    ResponseDone,
    SessionAck,
    SpeechPhrase,
    SpeechStarted,
    SpeechStopped,
    TruncateAck,
    UnrecognizedEvent,
    encode_event,
    input_audio_append,
    parse_realtime_event,
    response_create,
    session_update,
)
from src.supportline.recorder import CallRecorder, NoAudioRecorded
from src.supportline.segmenter import SpeechSegmenter
from src.supportline.session import CallSession, SessionPhase
from src.supportline.summarizer import TicketDraft, TicketSummarizer, summarize
from src.supportline.ticketing import KayakoTicketClient, TicketSubmission
from src.supportline.transcript import Role, TranscriptStore, TurnAppended, contains_human_request, extract_email
from src.supportline.transcription import AudioTranscriber, RollingTranscriber, mentions_human_agent
from src.supportline.transfer import CallTransferOrchestrator, TransferResult, TwilioTelephony
from src.supportline.twilio_protocol import (
    TwilioEventType,
    TwilioMarkEvent,
    TwilioMediaEvent,
    TwilioStartEvent,
    create_error_message,
    create_mark_message,
    create_media_message,
    parse_twilio_message,
)

logger = structlog.get_logger(__name__)

REALTIME_URL = "wss://api.openai.com/v1/realtime?model={model}"
RESPONSE_PART_MARK = "responsePart"
END_SILENCE_MARK = "endSilence"

SendMessage = Callable[[str], Awaitable[None]]
Connect = Callable[..., Awaitable[Any]]


class RealtimeCallPipeline:
    """
    Interface is compatible with `server/app.py`:
    - `start()`
    - `stop()`
    - `handle_message(raw_message)`
    """

    def __init__(
        self,
        send_message: SendMessage,
        *,
        config: Optional[Config] = None,
        llm: Optional[ChatLLM] = None,
        registry: Optional[TransferRegistry] = None,
        telephony: Optional[TwilioTelephony] = None,
        ticket_client: Optional[KayakoTicketClient] = None,
        connect: Optional[Connect] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.config = config or get_config()
        self._send_message = send_message
        self._connect = connect or websockets.connect
        self._sleep = sleep
        self._llm = llm

        self.session = CallSession()
        clock_kwargs = {"clock": clock} if clock is not None else {}
        self.store = TranscriptStore(
            self.session.state,
            turn_thresholds=ConfidenceThresholds.for_turns(self.config),
            observation_thresholds=ConfidenceThresholds.for_observations(self.config),
            on_turn=self._on_turn_appended,
            **clock_kwargs,
        )
        self.segmenter = SpeechSegmenter(
            self.store,
            debounce_ms=self.config.speech_start_debounce_ms,
            silence_min_frames=self.config.silence_min_frames,
            silence_window_frames=self.config.silence_window_frames,
            **clock_kwargs,
        )
        self.barge_in = BargeInController(
            self.session,
            self._realtime_send,
            self._send_twilio,
            min_elapsed_ms=self.config.barge_in_min_elapsed_ms,
        )
        self.forwarding = ForwardingEngine(
            self.config,
            registry=registry or get_transfer_registry(),
            adjudicator=ForwardingAdjudicator(llm) if llm is not None else None,
        )
        self.transfer = CallTransferOrchestrator(
            telephony or TwilioTelephony(self.config),
            self.store,
            self.config,
            registry=self.forwarding.registry,
            speak=self.speak,
            sleep=sleep,
        )
        self.recorder = CallRecorder(self.session.session_id, self.config.recordings_dir)
        self.rolling: Optional[RollingTranscriber] = None
        if llm is not None and self.config.whisper_fallback_enabled:
            self.rolling = RollingTranscriber(llm, interval_ms=self.config.whisper_interval_ms)
        self.transcriber = AudioTranscriber(llm) if llm is not None else None
        self.summarizer = TicketSummarizer(llm, company_name=self.config.company_name)
        self.ticket_client = ticket_client
        if ticket_client is None and self.config.ticketing_enabled:
            self.ticket_client = KayakoTicketClient(self.config)

        self._is_running = False
        self._twilio_open = True

        self._realtime_ws: Optional[Any] = None
        self._realtime_send_queue: asyncio.Queue[Optional[dict]] = asyncio.Queue(maxsize=2000)
        self._realtime_send_task: Optional[asyncio.Task] = None
        self._realtime_recv_task: Optional[asyncio.Task] = None
        self._configure_task: Optional[asyncio.Task] = None
        self._closing_task: Optional[asyncio.Task] = None

        self._forwarding_queue: asyncio.Queue[Optional[TurnAppended]] = asyncio.Queue()
        self._forwarding_task: Optional[asyncio.Task] = None
        self._whisper_tasks: Set[asyncio.Task] = set()

        self.draft: Optional[TicketDraft] = None
        self.submission: Optional[TicketSubmission] = None
        self.transfer_result: Optional[TransferResult] = None

    @property
    def call_sid(self) -> Optional[str]:
        return self.session.call_sid

    @property
    def stream_sid(self) -> str:
        return self.session.stream_sid

    @property
    def phase(self) -> SessionPhase:
        return self.session.phase

    async def start(self) -> None:
        self._is_running = True
        self.session.phase = SessionPhase.CONNECTING
        self._forwarding_task = asyncio.create_task(self._forwarding_worker())
        logger.info("Realtime call pipeline started", session_id=self.session.session_id)
        await self._connect_realtime()

    async def stop(self) -> None:
        await self.close()
        if self._closing_task is not None:
            await self._closing_task

    # Twilio -> pipeline

    async def handle_message(self, raw_message: str) -> None:
        try:
            event_type, event = parse_twilio_message(raw_message)
        except ValueError as e:
            logger.warning("Failed to parse Twilio message", error=str(e))
            return

        if event_type == TwilioEventType.START:
            self._handle_start(event)
            return

        if event_type == TwilioEventType.MEDIA:
            await self._handle_media(event)
            return

        if event_type == TwilioEventType.MARK:
            self._handle_mark(event)
            return

        if event_type == TwilioEventType.STOP:
            logger.info("Twilio stream stopped", stream_sid=self.stream_sid)
            await self.close()
            return

        # connected: nothing to do

    def _handle_start(self, event: TwilioStartEvent) -> None:
        session = self.session
        session.stream_sid = event.stream_sid
        session.call_sid = event.call_sid or None
        session.latest_media_timestamp = 0
        session.response_start_timestamp = None
        if event.caller_phone:
            session.state.caller.set_phone(event.caller_phone)

        logger.info(
            "Call started (realtime)",
            session_id=session.session_id,
            call_sid=event.call_sid,
            stream_sid=event.stream_sid,
        )

    async def _handle_media(self, event: TwilioMediaEvent) -> None:
        if not self._is_running or not event.payload:
            return

        self.session.latest_media_timestamp = event.timestamp
        self.recorder.add_caller_frame(event.payload)
        self.segmenter.observe_frame(event.payload)

        if self._realtime_ws is not None:
            await self._realtime_send(input_audio_append(event.payload_b64))

        if self.rolling is not None and self.rolling.add_frame(event.payload):
            task = asyncio.create_task(self._flush_rolling_transcription())
            self._whisper_tasks.add(task)
            task.add_done_callback(self._whisper_tasks.discard)

    def _handle_mark(self, event: TwilioMarkEvent) -> None:
        acknowledged = self.session.acknowledge_mark()
        logger.debug("Mark acknowledged", name=event.name, queued=acknowledged)

    # Realtime backend

    async def _connect_realtime(self) -> None:
        url = REALTIME_URL.format(model=self.config.openai_realtime_model)
        headers = {
            "Authorization": f"Bearer {self.config.openai_api_key}",
            "OpenAI-Beta": "realtime=v1",
        }
        try:
            self._realtime_ws = await self._connect(url, additional_headers=headers, open_timeout=10)
        except Exception as e:
            logger.error("OpenAI Realtime connection failed", error=str(e))
            await self._send_twilio(create_error_message("OpenAI connection error"))
            return

        self.session.phase = SessionPhase.ACTIVE
        self._realtime_send_task = asyncio.create_task(self._realtime_send_loop())
        self._realtime_recv_task = asyncio.create_task(self._realtime_receive_loop())
        self._configure_task = asyncio.create_task(self._configure_session())
        logger.info("OpenAI Realtime connected", model=self.config.openai_realtime_model)

    async def _configure_session(self) -> None:
        await self._sleep(self.config.session_settle_ms / 1000)
        config = self.config
        await self._realtime_send(
            session_update(
                instructions=build_system_instructions(config),
                voice=config.openai_realtime_voice,
                temperature=config.openai_realtime_temperature,
                vad_threshold=config.openai_realtime_vad_threshold,
                prefix_padding_ms=config.openai_realtime_prefix_padding_ms,
                silence_duration_ms=config.openai_realtime_turn_silence_ms,
                create_response=config.openai_realtime_create_response,
                interrupt_response=config.openai_realtime_interrupt_response,
            )
        )
        logger.info(
            "Realtime session configured",
            voice=config.openai_realtime_voice,
            vad_threshold=config.openai_realtime_vad_threshold,
            turn_silence_ms=config.openai_realtime_turn_silence_ms,
        )

    async def _realtime_send(self, message: dict) -> None:
        if not self._is_running:
            return

        # Avoid blocking the Twilio receiver on OpenAI backpressure.
        try:
            self._realtime_send_queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("OpenAI send queue full; dropping event", type=message.get("type"))

    async def _realtime_send_loop(self) -> None:
        ws = self._realtime_ws
        if not ws:
            return

        try:
            while True:
                item = await self._realtime_send_queue.get()
                if item is None:
                    break
                try:
                    await ws.send(encode_event(item))
                except Exception as e:
                    logger.error("OpenAI send failed", error=str(e), type=item.get("type"))
                    break
        except asyncio.CancelledError:
            pass

    async def _realtime_receive_loop(self) -> None:
        ws = self._realtime_ws
        if not ws:
            return

        try:
            async for raw in ws:
                if not self._is_running:
                    break
                await self.handle_realtime_message(raw)
        except asyncio.CancelledError:
            return
        except ConnectionClosed as e:
            logger.warning("OpenAI Realtime connection closed", code=getattr(e, "code", None))
        except Exception as e:
            logger.error("OpenAI receive loop failed", error=str(e))

        if self._is_running:
            await self._on_realtime_lost()

    async def _on_realtime_lost(self) -> None:
        """The backend hung up mid-call: tell Twilio, stop relaying, end the session."""
        logger.warning("OpenAI Realtime channel lost; ending session", session_id=self.session.session_id)
        await self._send_twilio(create_error_message("OpenAI connection error"))
        self._is_running = False
        self._closing_task = asyncio.create_task(self.close())

    async def handle_realtime_message(self, raw: Any) -> None:
        try:
            event = parse_realtime_event(raw)
        except ValueError as e:
            logger.warning("Failed to parse Realtime event", error=str(e))
            return

        try:
            await self._dispatch(event)
        except Exception:
            logger.exception("Realtime event handling failed", event=type(event).__name__)

    async def _dispatch(self, event: RealtimeEvent) -> None:
        if isinstance(event, AudioDelta):
            await self._handle_audio_delta(event)
        elif isinstance(event, SpeechStarted):
            await self._handle_speech_started()
        elif isinstance(event, SpeechStopped):
            self.segmenter.end_segment()
        elif isinstance(event, SpeechPhrase):
            self._handle_speech_phrase(event)
        elif isinstance(event, CallerTranscript):
            self.store.append_turn(Role.USER, event.text)
        elif isinstance(event, AssistantText):
            self.store.append_turn(Role.ASSISTANT, event.text, event.confidence)
        elif isinstance(event, AudioDone):
            await self._send_end_silence()
        elif isinstance(event, ResponseDone):
            self.session.on_response_done()
            logger.debug("Response done", response_id=event.response_id, status=event.status)
        elif isinstance(event, (TruncateAck, SessionAck)):
            logger.debug("Realtime ack", event=event)
        elif isinstance(event, RealtimeError):
            logger.error("OpenAI Realtime error", message=event.message, code=event.code)
        elif isinstance(event, UnrecognizedEvent):
            logger.debug("Unhandled Realtime event", type=event.type)

    async def _handle_audio_delta(self, event: AudioDelta) -> None:
        if not event.delta or not self.stream_sid:
            return

        await self._send_twilio(create_media_message(self.stream_sid, event.delta))
        try:
            self.recorder.add_assistant_frame(base64.b64decode(event.delta))
        except (binascii.Error, ValueError):
            logger.debug("Undecodable assistant audio skipped from recording")

        self.session.on_assistant_audio(event.item_id)
        self.session.outbound_marks.append(RESPONSE_PART_MARK)
        await self._send_twilio(create_mark_message(self.stream_sid, RESPONSE_PART_MARK))

    async def _send_end_silence(self) -> None:
        if not self.stream_sid:
            return
        # One frame of silence keeps the caller's echo canceller from clipping the next utterance.
        await self._send_twilio(create_media_message(self.stream_sid, create_silence_ulaw(FRAME_DURATION_MS)))
        self.session.outbound_marks.append(END_SILENCE_MARK)
        await self._send_twilio(create_mark_message(self.stream_sid, END_SILENCE_MARK))

    async def _handle_speech_started(self) -> None:
        if self.segmenter.start_segment() is None:
            return
        await self.barge_in.on_user_speech_started()

    def _handle_speech_phrase(self, event: SpeechPhrase) -> None:
        text = event.text.strip()
        if not text:
            return

        self.store.add_observation(
            text,
            confidence=event.confidence,
            is_final=event.is_final,
            duration=event.duration,
            start_time=event.start_time,
            end_time=event.end_time,
        )
        self.segmenter.update_recognition(text, event.confidence, event.is_final)

        if event.is_final:
            self.store.append_turn(Role.USER, text, event.confidence)
        elif contains_human_request(text):
            self._request_forwarding_check(text, observation=True)

    async def speak(self, text: str) -> None:
        """Have the assistant voice a fixed line."""
        await self._realtime_send(response_create(instructions=f'Say exactly this to the caller: "{text}"'))

    async def _send_twilio(self, message: str) -> None:
        if not self._twilio_open:
            return
        try:
            await self._send_message(message)
        except Exception as e:
            logger.warning("Failed to send Twilio message", error=str(e))

    # Whisper fallback

    async def _flush_rolling_transcription(self) -> None:
        rolling = self.rolling
        if rolling is None:
            return
        text = await rolling.flush()
        if not text or not self._is_running:
            return

        confidence = rolling.confidence_for(text)
        self.store.append_turn(Role.USER, text, confidence)
        logger.info("Whisper fallback transcript", chars=len(text), confidence=confidence)
        if mentions_human_agent(text):
            self._request_forwarding_check(text)

    # Forwarding

    def _on_turn_appended(self, note: TurnAppended) -> None:
        if self.session.is_open:
            self._forwarding_queue.put_nowait(note)

    def _request_forwarding_check(self, text: str, *, observation: bool = False) -> None:
        self._on_turn_appended(TurnAppended(role=Role.USER, text=text, human_request=True, observation=observation))

    async def _forwarding_worker(self) -> None:
        while True:
            note = await self._forwarding_queue.get()
            try:
                if note is None:
                    break
                await self._evaluate_forwarding(note)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Forwarding evaluation failed", session_id=self.session.session_id)
            finally:
                self._forwarding_queue.task_done()

    async def _evaluate_forwarding(self, note: TurnAppended) -> None:
        flagged = (note.text,) if note.observation else ()
        verdict = await self.forwarding.evaluate(self.session, flagged)
        if not self.forwarding.commit(self.session, verdict):
            return

        logger.info(
            "Forwarding verdict committed",
            session_id=self.session.session_id,
            trigger=note.role.value,
            rule=verdict.rule,
        )
        self.transfer_result = await self.transfer.transfer(
            self.session,
            verdict,
            channel_open=self._twilio_open and self.session.is_open,
        )

    async def drain_forwarding(self) -> None:
        """Wait until every queued forwarding evaluation has run."""
        await self._forwarding_queue.join()

    # Close

    async def close(self) -> None:
        session = self.session
        if session.phase in (SessionPhase.CLOSING, SessionPhase.CLOSED):
            return

        session.phase = SessionPhase.CLOSING
        self._is_running = False
        self._twilio_open = False
        logger.info("Closing call session", session_id=session.session_id, call_sid=session.call_sid)

        self.segmenter.end_segment()
        await self._cancel_background_tasks()

        try:
            await self._finalize_call()
        finally:
            self.forwarding.release(session)
            await self._close_realtime()
            session.phase = SessionPhase.CLOSED
            logger.info("Call session closed", session_id=session.session_id)

    async def _cancel_background_tasks(self) -> None:
        tasks = [t for t in (self._forwarding_task, self._configure_task, *self._whisper_tasks) if t]
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._forwarding_task = None
        self._configure_task = None
        self._whisper_tasks.clear()

    async def _finalize_call(self) -> None:
        session = self.session
        state = session.state

        recording_path = None
        try:
            recording_path = self.recorder.finish()
        except NoAudioRecorded:
            logger.warning("No audio recorded for call", session_id=session.session_id)
        except OSError:
            logger.exception("Failed to save call recording", session_id=session.session_id)

        audio_text = ""
        if recording_path is not None and self.transcriber is not None:
            try:
                audio_text = await self.transcriber.transcribe(recording_path)
            except Exception as e:
                logger.error("Recording transcription failed", session_id=session.session_id, error=str(e))

        parsed = []
        if audio_text and self.transcriber is not None:
            parsed = await self.transcriber.parse_conversation(audio_text)
            email = extract_email(audio_text)
            if email and state.caller.set_email(email):
                logger.info("Caller email taken from recording transcript", email=email)

        if not state.transcript and not parsed:
            logger.info("Empty conversation; no ticket filed", session_id=session.session_id)
            return

        try:
            self.draft = await self.summarizer.summarize(state, parsed)
        except Exception:
            logger.exception("Ticket summarization failed; using plain summary", session_id=session.session_id)
            self.draft = summarize(state, parsed)

        if self.ticket_client is None:
            return
        try:
            self.submission = await self.ticket_client.submit(session.session_id, self.draft)
        except Exception:
            logger.exception("Ticket submission failed", session_id=session.session_id)

    async def _close_realtime(self) -> None:
        try:
            self._realtime_send_queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

        tasks = [t for t in (self._realtime_send_task, self._realtime_recv_task) if t]
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if self._realtime_ws is not None:
            try:
                await self._realtime_ws.close()
            except Exception as e:
                logger.debug("OpenAI websocket close failed", error=str(e))

        self._realtime_ws = None
        self._realtime_send_task = None
        self._realtime_recv_task = None


async def create_pipeline(
    send_message: SendMessage,
    **kwargs: Any,
) -> RealtimeCallPipeline:
    """
    Create and start a new realtime call pipeline.

    Args:
        send_message: Function to send messages to Twilio WebSocket

    Returns:
        Initialized and started RealtimeCallPipeline
    """
    pipeline = RealtimeCallPipeline(send_message, **kwargs)
    await pipeline.start()
    return pipeline
