"""
Tests for the transcription manager and the Deepgram message handling.
"""

import dataclasses
from unittest.mock import AsyncMock

import pytest

from fakes import FakeTranscriptionStream, wait_until

from src.voicedesk.config import get_config
from src.voicedesk.errors import TranscriptionWriteError
from src.voicedesk.session import TranscriptSegment
from src.voicedesk.transcription import DeepgramTranscriptionStream, TranscriptionManager


@pytest.fixture
def fast_config():
    return dataclasses.replace(get_config(), transcription_recreate_interval_seconds=0.01)


class TestTranscriptionManager:
    """Tests for stream recreation and buffering."""

    @pytest.mark.asyncio
    async def test_frames_forwarded(self, fast_config, transcription_factory):
        manager = TranscriptionManager("CA1", transcription_factory, on_segment=AsyncMock(), config=fast_config)

        assert await manager.start()
        await manager.send_audio(b"a")
        await manager.send_audio(b"b")

        assert transcription_factory.created[0].frames == [b"a", b"b"]
        await manager.stop()

    @pytest.mark.asyncio
    async def test_segments_delivered(self, fast_config, transcription_factory):
        on_segment = AsyncMock()
        manager = TranscriptionManager("CA1", transcription_factory, on_segment=on_segment, config=fast_config)
        await manager.start()

        await transcription_factory.created[0].emit("hello there", is_final=False)

        segment = on_segment.await_args.args[0]
        assert isinstance(segment, TranscriptSegment)
        assert segment.text == "hello there"
        assert not segment.is_final
        await manager.stop()

    @pytest.mark.asyncio
    async def test_write_failure_recreates_and_flushes_in_order(self, fast_config, transcription_factory):
        manager = TranscriptionManager("CA1", transcription_factory, on_segment=AsyncMock(), config=fast_config)
        await manager.start()
        first = transcription_factory.created[0]
        first.fail_writes = True

        await manager.send_audio(b"a")
        await manager.send_audio(b"b")

        assert await wait_until(lambda: len(transcription_factory.created) == 2 and not manager.recreating)
        second = transcription_factory.created[1]
        assert second.frames == [b"a", b"b"]
        assert first.closed
        assert manager.recreate_count == 1
        assert manager.stream is second
        assert second.on_segment == first.on_segment
        assert second.on_error == first.on_error

        await manager.send_audio(b"c")
        assert second.frames == [b"a", b"b", b"c"]
        await manager.stop()

    @pytest.mark.asyncio
    async def test_stream_error_reported_and_healed(self, fast_config, transcription_factory):
        on_error = AsyncMock()
        manager = TranscriptionManager(
            "CA1", transcription_factory, on_segment=AsyncMock(), on_error=on_error, config=fast_config
        )
        await manager.start()

        await transcription_factory.created[0].on_error(ConnectionError("socket closed"))

        on_error.assert_awaited_once()
        assert await wait_until(lambda: len(transcription_factory.created) == 2)
        await manager.stop()

    @pytest.mark.asyncio
    async def test_buffer_is_bounded(self):
        config = dataclasses.replace(
            get_config(),
            transcription_buffer_frames=2,
            transcription_recreate_interval_seconds=10.0,
        )

        def failing_factory(on_segment, on_error):
            return FakeTranscriptionStream(on_segment, on_error, connect_ok=False)

        manager = TranscriptionManager("CA1", failing_factory, on_segment=AsyncMock(), config=config)

        assert not await manager.start()
        for frame in (b"a", b"b", b"c"):
            await manager.send_audio(frame)

        assert manager.buffered_frames == 2
        assert manager.dropped_frames == 1
        await manager.stop()

    @pytest.mark.asyncio
    async def test_stop_discards_and_ignores_input(self, fast_config, transcription_factory):
        on_segment = AsyncMock()
        manager = TranscriptionManager("CA1", transcription_factory, on_segment=on_segment, config=fast_config)
        await manager.start()
        stream = transcription_factory.created[0]

        await manager.stop()
        await manager.send_audio(b"a")
        await stream.emit("too late")

        assert stream.closed
        assert stream.frames == []
        on_segment.assert_not_awaited()


class TestDeepgramTranscriptionStream:
    """Tests for Deepgram message handling."""

    @pytest.mark.asyncio
    async def test_results_become_segments(self):
        on_segment = AsyncMock()
        stream = DeepgramTranscriptionStream(on_segment, AsyncMock(), get_config())

        await stream._handle_message({
            "type": "Results",
            "is_final": True,
            "channel": {"alternatives": [{"transcript": "How do I reset my password?"}]},
        })

        segment = on_segment.await_args.args[0]
        assert segment.text == "How do I reset my password?"
        assert segment.is_final

    @pytest.mark.asyncio
    async def test_empty_transcript_ignored(self):
        on_segment = AsyncMock()
        stream = DeepgramTranscriptionStream(on_segment, AsyncMock(), get_config())

        await stream._handle_message({"type": "Results", "channel": {"alternatives": [{"transcript": ""}]}})
        await stream._handle_message({"type": "Metadata"})

        on_segment.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_send_without_connection_raises(self):
        stream = DeepgramTranscriptionStream(AsyncMock(), AsyncMock(), get_config())

        with pytest.raises(TranscriptionWriteError):
            await stream.send_audio(b"\xff" * 160)

    def test_connection_url_parameters(self):
        stream = DeepgramTranscriptionStream(AsyncMock(), AsyncMock(), get_config())

        model, url = stream._candidates()[0]

        assert model == "nova-3"
        assert "encoding=mulaw" in url
        assert "sample_rate=8000" in url
        assert "interim_results=true" in url
        assert "endpointing=300" in url
