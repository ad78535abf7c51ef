"""
Tests for call transfer.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
import requests
from twilio.base.exceptions import TwilioRestException

from src.supportline.forwarding import ForwardingVerdict
from src.supportline.session import CallSession
from src.supportline.transcript import Role, TranscriptStore
from src.supportline.transfer import (
    ACKNOWLEDGEMENT_TEXT,
    PRECONDITION_TEXT,
    CallTransferOrchestrator,
    TransferError,
    TransferOutcome,
    TransferStatus,
    TwilioTelephony,
    build_briefing,
    build_transfer_twiml,
)

VERDICT = ForwardingVerdict(True, "Caller asked for a human", rule="explicit_request")


@pytest.fixture
def session():
    return CallSession(stream_sid="MZ123456", call_sid="CA789012")


@pytest.fixture
def store(session):
    return TranscriptStore(session.state)


@pytest.fixture
def telephony():
    fake = MagicMock()
    fake.transfer_call = AsyncMock(return_value=TransferOutcome.REDIRECTED)
    fake.resolve_call_sid = AsyncMock(return_value=None)
    return fake


@pytest.fixture
def speak():
    return AsyncMock()


@pytest.fixture
def orchestrator(telephony, store, config, registry, speak):
    return CallTransferOrchestrator(
        telephony, store, config, registry=registry, speak=speak, sleep=AsyncMock()
    )


class TestOrchestrator:
    @pytest.mark.asyncio
    async def test_successful_transfer(self, orchestrator, session, store, telephony, speak):
        store.append_turn(Role.USER, "get me a human")

        result = await orchestrator.transfer(session, VERDICT, channel_open=True)

        assert result.status == TransferStatus.TRANSFERRED
        assert result.outcome == TransferOutcome.REDIRECTED
        assert result.attempts == 1
        assert store.turns[-1].text == ACKNOWLEDGEMENT_TEXT
        speak.assert_awaited_once_with(ACKNOWLEDGEMENT_TEXT)
        call_sid, briefing = telephony.transfer_call.await_args.args
        assert call_sid == "CA789012"
        assert "Customer: get me a human" in briefing
        assert session.state.requires_human_followup is True

    @pytest.mark.asyncio
    async def test_missing_call_sid_aborts(self, orchestrator, session, store, telephony):
        session.call_sid = None

        result = await orchestrator.transfer(session, VERDICT, channel_open=True)

        assert result.status == TransferStatus.ABORTED
        assert store.turns[-1].text == PRECONDITION_TEXT
        telephony.transfer_call.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_closed_channel_aborts(self, orchestrator, session, telephony):
        result = await orchestrator.transfer(session, VERDICT, channel_open=False)
        assert result.status == TransferStatus.ABORTED
        telephony.transfer_call.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_existing_acknowledgement_not_repeated(self, orchestrator, session, store, speak):
        store.append_turn(Role.USER, "transfer me please")
        store.append_turn(Role.ASSISTANT, "Sure, I'll connect you with a human right away.")

        await orchestrator.transfer(session, VERDICT, channel_open=True)

        speak.assert_not_awaited()
        assert sum(t.text == ACKNOWLEDGEMENT_TEXT for t in store.turns) == 0

    @pytest.mark.asyncio
    async def test_grace_period_while_assistant_speaking(self, telephony, store, config, session):
        sleep = AsyncMock()
        orchestrator = CallTransferOrchestrator(telephony, store, config, sleep=sleep)
        session.on_assistant_audio("item_1")

        await orchestrator.transfer(session, VERDICT, channel_open=True)

        delays = [c.args[0] for c in sleep.await_args_list]
        assert delays == [config.transfer_grace_seconds, config.transfer_pause_seconds]

    @pytest.mark.asyncio
    async def test_retries_with_fresh_call_sid(self, orchestrator, session, telephony, registry):
        telephony.transfer_call.side_effect = [
            TransferError("Call CA789012 not found or not accessible", call_sid="CA789012"),
            TransferOutcome.REDIRECTED,
        ]
        telephony.resolve_call_sid.return_value = "CA999999"

        result = await orchestrator.transfer(session, VERDICT, channel_open=True)

        assert result.status == TransferStatus.TRANSFERRED
        assert result.attempts == 2
        assert result.call_sid == "CA999999"
        assert session.call_sid == "CA999999"
        assert registry.was_attempted("CA999999")
        telephony.resolve_call_sid.assert_awaited_once_with("MZ123456")

    @pytest.mark.asyncio
    async def test_same_sid_is_not_retried(self, orchestrator, session, store, telephony, speak):
        telephony.transfer_call.side_effect = TransferError("Call CA789012 not found or not accessible")
        telephony.resolve_call_sid.return_value = "CA789012"

        result = await orchestrator.transfer(session, VERDICT, channel_open=True)

        assert result.status == TransferStatus.FAILED
        assert telephony.transfer_call.await_count == 1
        apology = store.turns[-1].text
        assert "+15551112222" in apology
        assert "issue with the call connection" in apology
        assert speak.await_args.args[0] == apology

    @pytest.mark.asyncio
    async def test_retry_failure_apologises(self, orchestrator, session, store, telephony):
        telephony.transfer_call.side_effect = [
            TransferError("Call CA789012 not found or not accessible"),
            TransferError("Twilio is unavailable"),
        ]
        telephony.resolve_call_sid.return_value = "CA999999"

        result = await orchestrator.transfer(session, VERDICT, channel_open=True)

        assert result.status == TransferStatus.FAILED
        assert result.attempts == 2
        apology = store.turns[-1].text
        assert "issue with the call connection" not in apology
        assert apology.endswith("+15551112222")

    @pytest.mark.asyncio
    async def test_speak_failure_does_not_abort(self, telephony, store, config, session):
        speak = AsyncMock(side_effect=RuntimeError("socket closed"))
        orchestrator = CallTransferOrchestrator(telephony, store, config, speak=speak, sleep=AsyncMock())

        result = await orchestrator.transfer(session, VERDICT, channel_open=True)

        assert result.status == TransferStatus.TRANSFERRED


class TestBriefing:
    def test_format(self, store):
        store.state.caller.set_phone("+15557654321")
        for i in range(4):
            store.append_turn(Role.USER, f"question {i}")
            store.append_turn(Role.ASSISTANT, f"answer {i}")

        briefing = build_briefing(store.state)

        lines = briefing.split("\n")
        assert lines[0] == "Call transferred from AI assistant."
        assert lines[1] == "Customer Email: Not provided"
        assert lines[2] == "Customer Phone: +15557654321"
        assert lines[3] == "Recent Conversation:"
        assert lines[4:] == [
            "AI: answer 1",
            "Customer: question 2",
            "AI: answer 2",
            "Customer: question 3",
            "AI: answer 3",
        ]


class TestTwilioTelephony:
    def test_transfer_twiml(self):
        twiml = build_transfer_twiml("+15551112222", "+15550000000")
        assert "<Dial callerId=\"+15550000000\"><Number>+15551112222</Number></Dial>" in twiml
        assert twiml.index("<Say>") < twiml.index("<Dial")

    @pytest.mark.asyncio
    async def test_redirect(self, config):
        client = MagicMock()
        client.calls.return_value.fetch.return_value = MagicMock(status="in-progress")
        telephony = TwilioTelephony(config, client=client)

        outcome = await telephony.transfer_call("CA789012", "briefing")

        assert outcome == TransferOutcome.REDIRECTED
        twiml = client.calls.return_value.update.call_args.kwargs["twiml"]
        assert "+15551112222" in twiml
        client.calls.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_call_dials_agent(self, config):
        client = MagicMock()
        client.calls.return_value.fetch.side_effect = TwilioRestException(404, "/Calls/CA1", "not found")
        telephony = TwilioTelephony(config, client=client)

        outcome = await telephony.transfer_call("CA1", "briefing")

        assert outcome == TransferOutcome.AGENT_DIALED
        kwargs = client.calls.create.call_args.kwargs
        assert kwargs["to"] == "+15551112222"
        assert kwargs["from_"] == "+15550000000"

    @pytest.mark.asyncio
    async def test_both_paths_fail(self, config):
        client = MagicMock()
        client.calls.return_value.fetch.side_effect = TwilioRestException(404, "/Calls/CA1", "not found")
        client.calls.create.side_effect = TwilioRestException(400, "/Calls", "bad request")
        telephony = TwilioTelephony(config, client=client)

        with pytest.raises(TransferError) as exc_info:
            await telephony.transfer_call("CA1", "briefing")
        assert exc_info.value.invalid_call is True

    @pytest.mark.asyncio
    async def test_resolve_single_call(self, config):
        client = MagicMock()
        client.calls.list.return_value = [MagicMock(sid="CA111")]
        assert await TwilioTelephony(config, client=client).resolve_call_sid("MZ1") == "CA111"

    @pytest.mark.asyncio
    async def test_resolve_picks_most_recent(self, config):
        client = MagicMock()
        client.calls.list.return_value = [
            MagicMock(sid="CA_OLD", date_created=datetime(2024, 1, 1, tzinfo=timezone.utc)),
            MagicMock(sid="CA_NEW", date_created=datetime(2024, 1, 2, tzinfo=timezone.utc)),
        ]
        assert await TwilioTelephony(config, client=client).resolve_call_sid("MZ1") == "CA_NEW"

    @pytest.mark.asyncio
    async def test_resolve_none_live(self, config):
        client = MagicMock()
        client.calls.list.return_value = []
        assert await TwilioTelephony(config, client=client).resolve_call_sid("MZ1") is None

    @pytest.mark.asyncio
    async def test_connection_reset_becomes_transfer_error(self, config):
        client = MagicMock()
        client.calls.return_value.fetch.side_effect = requests.ConnectionError("reset by peer")
        client.calls.create.side_effect = requests.ConnectionError("reset by peer")
        telephony = TwilioTelephony(config, client=client)

        with pytest.raises(TransferError) as exc_info:
            await telephony.transfer_call("CA1", "briefing")
        assert exc_info.value.invalid_call is False

    @pytest.mark.asyncio
    async def test_resolve_connection_error_is_none(self, config):
        client = MagicMock()
        client.calls.list.side_effect = requests.ConnectionError("reset by peer")
        assert await TwilioTelephony(config, client=client).resolve_call_sid("MZ1") is None


@pytest.mark.asyncio
async def test_network_failure_ends_with_apology(config, session, store, speak):
    client = MagicMock()
    client.calls.return_value.fetch.side_effect = requests.ConnectionError("reset by peer")
    client.calls.create.side_effect = requests.ConnectionError("reset by peer")
    client.calls.list.side_effect = requests.ConnectionError("reset by peer")
    orchestrator = CallTransferOrchestrator(
        TwilioTelephony(config, client=client), store, config, speak=speak, sleep=AsyncMock()
    )

    result = await orchestrator.transfer(session, VERDICT, channel_open=True)

    assert result.status == TransferStatus.FAILED
    apology = store.turns[-1].text
    assert apology != ACKNOWLEDGEMENT_TEXT
    assert apology.endswith("+15551112222")
    assert speak.await_args.args[0] == apology
