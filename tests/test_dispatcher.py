"""
Tests for call-control dispatch.
"""

import asyncio
import dataclasses
from unittest.mock import AsyncMock, MagicMock

import pytest
from twilio.base.exceptions import TwilioException

from fakes import FakeClock, RecordingCallControl, wait_until

from src.voicedesk.config import get_config
from src.voicedesk.dispatcher import PlaybackDispatcher, TwilioCallControl, build_twiml
from src.voicedesk.session import ReplyChunk, Session, SessionPhase


def generating(call_id="CA1", epoch=1):
    session = Session(call_id=call_id, generation_epoch=epoch, reply_in_flight=True)
    session.transition(SessionPhase.GENERATING)
    return session


class TestBuildTwiml:
    """Tests for TwiML updates."""

    def test_say_then_pause(self):
        twiml = build_twiml(
            "Hello there.",
            continue_listening=True,
            hangup=False,
            voice="Polly.Amy-Neural",
            language="en-GB",
            pause_seconds=120,
        )

        assert "<Say" in twiml
        assert "Hello there.</Say>" in twiml
        assert 'voice="Polly.Amy-Neural"' in twiml
        assert "<Pause" in twiml
        assert 'length="120"' in twiml
        assert "<Hangup" not in twiml

    def test_say_then_hangup(self):
        twiml = build_twiml(
            "Goodbye!",
            continue_listening=False,
            hangup=True,
            voice="Polly.Amy-Neural",
            language="en-GB",
            pause_seconds=120,
        )

        assert "<Hangup" in twiml
        assert "<Pause" not in twiml

    def test_keep_listening_has_no_say(self):
        twiml = build_twiml(
            "",
            continue_listening=True,
            hangup=False,
            voice="Polly.Amy-Neural",
            language="en-GB",
            pause_seconds=120,
        )

        assert "<Say" not in twiml
        assert "<Pause" in twiml


class TestTwilioCallControl:
    """Tests for the REST-backed call control."""

    @pytest.mark.asyncio
    async def test_update_applies_twiml(self):
        client = MagicMock()
        control = TwilioCallControl(get_config(), client=client)

        ok = await control.update_call("CA1", "Hello there.", continue_listening=True, hangup=False)

        assert ok
        client.calls.assert_called_once_with("CA1")
        twiml = client.calls.return_value.update.call_args.kwargs["twiml"]
        assert "Hello there." in twiml

    @pytest.mark.asyncio
    async def test_twilio_error_returns_false(self):
        client = MagicMock()
        client.calls.return_value.update.side_effect = TwilioException("call not found")
        control = TwilioCallControl(get_config(), client=client)

        assert not await control.update_call("CA1", "Hello.", continue_listening=True, hangup=False)


class TestPlaybackDispatcher:
    """Tests for serialized, epoch-checked dispatch."""

    @pytest.mark.asyncio
    async def test_dispatch_speaks_and_streams(self):
        control = RecordingCallControl()
        clock = FakeClock(50.0)
        dispatcher = PlaybackDispatcher(control, get_config(), clock=clock)
        session = generating()

        ok = await dispatcher.dispatch(session, ReplyChunk("Hello there.", 0, 1))

        assert ok
        assert control.updates == [
            {"call_id": "CA1", "text": "Hello there.", "continue_listening": True, "hangup": False}
        ]
        assert session.phase == SessionPhase.STREAMING
        assert session.last_reply_dispatch_at == 50.0

    @pytest.mark.asyncio
    async def test_stale_epoch_dropped(self):
        control = RecordingCallControl()
        dispatcher = PlaybackDispatcher(control, get_config())
        session = generating(epoch=3)

        ok = await dispatcher.dispatch(session, ReplyChunk("Old reply.", 4, 2))

        assert not ok
        assert control.updates == []
        assert dispatcher.total_dropped == 1

    @pytest.mark.asyncio
    async def test_ended_session_dropped(self):
        control = RecordingCallControl()
        dispatcher = PlaybackDispatcher(control, get_config())
        session = generating()
        session.end()

        assert not await dispatcher.dispatch(session, ReplyChunk("Too late.", 0, session.generation_epoch))
        assert control.updates == []

    @pytest.mark.asyncio
    async def test_updates_are_serialized_in_order(self):
        control = RecordingCallControl(delay=0.02)
        dispatcher = PlaybackDispatcher(control, get_config())
        session = generating()

        results = await asyncio.gather(
            *(dispatcher.dispatch(session, ReplyChunk(f"Sentence {i}.", i, 1)) for i in range(3))
        )

        assert results == [True, True, True]
        assert control.max_in_flight == 1
        assert control.spoken == ["Sentence 0.", "Sentence 1.", "Sentence 2."]

    @pytest.mark.asyncio
    async def test_chunk_invalidated_while_waiting_is_dropped(self):
        control = RecordingCallControl(delay=0.05)
        dispatcher = PlaybackDispatcher(control, get_config())
        session = generating(epoch=1)

        first = asyncio.create_task(dispatcher.dispatch(session, ReplyChunk("Current.", 0, 1)))
        await asyncio.sleep(0.01)
        second = asyncio.create_task(dispatcher.dispatch(session, ReplyChunk("Stale.", 1, 1)))
        await asyncio.sleep(0)
        session.generation_epoch = 2

        assert await first
        assert not await second
        assert control.spoken == ["Current."]

    @pytest.mark.asyncio
    async def test_failure_marks_degraded_and_success_resets(self):
        control = RecordingCallControl(fail=True)
        dispatcher = PlaybackDispatcher(control, get_config())
        session = generating()

        assert not await dispatcher.dispatch(session, ReplyChunk("Hello.", 0, 1))
        assert session.degraded
        assert session.dispatch_failures == 1
        assert not session.is_ended

        control.fail = False
        assert await dispatcher.dispatch(session, ReplyChunk("Hello.", 1, 1))
        assert session.dispatch_failures == 0

    @pytest.mark.asyncio
    async def test_repeated_failures_end_session(self):
        config = dataclasses.replace(get_config(), max_dispatch_failures=2)
        on_hangup = AsyncMock()
        dispatcher = PlaybackDispatcher(RecordingCallControl(fail=True), config, on_hangup=on_hangup)
        session = generating()

        await dispatcher.dispatch(session, ReplyChunk("One.", 0, 1))
        assert not session.is_ended

        await dispatcher.dispatch(session, ReplyChunk("Two.", 1, 1))
        assert session.is_ended
        assert await wait_until(lambda: on_hangup.await_count == 1)
        on_hangup.assert_awaited_with("CA1")

    @pytest.mark.asyncio
    async def test_call_control_exception_is_a_failure(self):
        control = MagicMock()
        control.update_call = AsyncMock(side_effect=RuntimeError("socket closed"))
        dispatcher = PlaybackDispatcher(control, get_config())
        session = generating()

        assert not await dispatcher.dispatch(session, ReplyChunk("Hello.", 0, 1))
        assert session.degraded

    @pytest.mark.asyncio
    async def test_keep_listening_sends_empty_update(self):
        control = RecordingCallControl()
        dispatcher = PlaybackDispatcher(control, get_config())

        assert await dispatcher.keep_listening(generating())
        assert control.updates[0]["text"] == ""
        assert control.updates[0]["continue_listening"]

    @pytest.mark.asyncio
    async def test_keep_listening_leaves_reply_timestamp(self):
        clock = FakeClock(50.0)
        dispatcher = PlaybackDispatcher(RecordingCallControl(), get_config(), clock=clock)
        session = generating()

        await dispatcher.dispatch(session, ReplyChunk("Hello there.", 0, 1))
        clock.advance(5.0)
        await dispatcher.keep_listening(session)

        assert session.last_reply_dispatch_at == 50.0

    @pytest.mark.asyncio
    async def test_goodbye_hangs_up_and_ends(self):
        control = RecordingCallControl()
        on_hangup = AsyncMock()
        dispatcher = PlaybackDispatcher(control, get_config(), on_hangup=on_hangup)
        session = generating()

        assert await dispatcher.say_goodbye(session, "Thanks for calling, goodbye!")

        assert control.updates[-1]["hangup"]
        assert control.updates[-1]["text"] == "Thanks for calling, goodbye!"
        assert session.is_ended
        on_hangup.assert_awaited_once_with("CA1")
