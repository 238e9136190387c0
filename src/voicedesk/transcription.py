"""
Streaming transcription for inbound call audio.

Deepgram accepts mu-law 8kHz straight from Twilio, so frames are forwarded
untouched. The manager keeps one stream per call alive: when a write fails or
the stream errors, incoming frames are buffered (bounded) and a replacement
stream is created with the same callbacks, then the buffer is flushed in order.
"""

import asyncio
import json
import time
from collections import deque
from typing import Awaitable, Callable, Deque, List, Optional, Protocol, Tuple

import structlog
import websockets

from src.voicedesk.config import Config, get_config
from src.voicedesk.errors import TranscriptionWriteError
from src.voicedesk.session import TranscriptSegment

logger = structlog.get_logger(__name__)

DEEPGRAM_URL = "wss://api.deepgram.com/v1/listen"
DEEPGRAM_MODELS = ("nova-3", "nova-2")

SegmentCallback = Callable[[TranscriptSegment], Awaitable[None]]
ErrorCallback = Callable[[BaseException], Awaitable[None]]


class TranscriptionStream(Protocol):
    @property
    def is_connected(self) -> bool:
        ...

    async def connect(self) -> bool:
        ...

    async def send_audio(self, audio_bytes: bytes) -> None:
        ...

    async def close(self) -> None:
        ...


StreamFactory = Callable[[SegmentCallback, ErrorCallback], TranscriptionStream]


class DeepgramTranscriptionStream:
    """
    Deepgram streaming client over a raw WebSocket.

    Emits interim and final segments; reports unexpected disconnects through
    `on_error`. `send_audio` raises TranscriptionWriteError instead of
    swallowing failures so the manager can recreate the stream.
    """

    def __init__(
        self,
        on_segment: SegmentCallback,
        on_error: ErrorCallback,
        config: Optional[Config] = None,
    ):
        if config is None:
            config = get_config()

        self.config = config
        self._on_segment = on_segment
        self._on_error = on_error
        self._ws = None
        self._is_connected = False
        self._closing = False
        self._receive_task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    def _candidates(self) -> List[Tuple[str, str]]:
        candidates = []
        for model in DEEPGRAM_MODELS:
            url = (
                DEEPGRAM_URL
                + f"?model={model}"
                + "&encoding=mulaw"
                + "&sample_rate=8000"
                + "&channels=1"
                + "&punctuate=true"
                + "&interim_results=true"
                + "&smart_format=true"
                + f"&endpointing={self.config.deepgram_endpointing_ms}"
                + f"&language={self.config.deepgram_language}"
            )
            candidates.append((model, url))
        return candidates

    async def connect(self) -> bool:
        if self._is_connected:
            return True

        headers = {"Authorization": f"Token {self.config.deepgram_api_key}"}
        last_error: Optional[BaseException] = None

        # Model availability varies by account.
        for model, url in self._candidates():
            try:
                logger.info("Connecting to Deepgram", model=model)
                self._ws = await websockets.connect(url, additional_headers=headers, open_timeout=10)
                logger.info("Deepgram connected", model=model)
                break
            except Exception as e:
                last_error = e
                logger.warning(
                    "Deepgram connection attempt failed",
                    model=model,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                self._ws = None

        if self._ws is None:
            logger.error(
                "Deepgram connection failed",
                error_type=type(last_error).__name__ if last_error else "unknown",
            )
            return False

        self._is_connected = True
        self._receive_task = asyncio.create_task(self._receive_loop())
        return True

    async def close(self) -> None:
        self._closing = True
        self._is_connected = False

        if self._receive_task:
            self._receive_task.cancel()
            await asyncio.gather(self._receive_task, return_exceptions=True)
            self._receive_task = None

        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as e:
                logger.warning("Error closing Deepgram connection", error=str(e))
        self._ws = None

    async def send_audio(self, audio_bytes: bytes) -> None:
        if not self._is_connected or self._ws is None:
            raise TranscriptionWriteError("Transcription stream is not connected")
        try:
            await self._ws.send(audio_bytes)
        except Exception as e:
            self._is_connected = False
            raise TranscriptionWriteError(f"Failed to send audio to Deepgram: {e}") from e

    async def _receive_loop(self) -> None:
        error: Optional[BaseException] = None
        try:
            async for message in self._ws:
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON from Deepgram")
                    continue
                await self._handle_message(data)
        except websockets.exceptions.ConnectionClosed as e:
            error = e
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Deepgram receive loop error", error_type=type(e).__name__, error=str(e))
            error = e
        finally:
            self._is_connected = False

        if not self._closing:
            logger.info("Deepgram connection closed unexpectedly")
            await self._on_error(error or ConnectionError("Deepgram stream ended"))

    async def _handle_message(self, data: dict) -> None:
        msg_type = str(data.get("type", "")).lower()

        if msg_type == "results":
            alternatives = (data.get("channel") or {}).get("alternatives") or []
            if not alternatives:
                return
            transcript = alternatives[0].get("transcript", "")
            if not transcript:
                return

            segment = TranscriptSegment(text=transcript, is_final=bool(data.get("is_final", False)))
            logger.debug(
                "Transcript segment",
                text=transcript[:50],
                is_final=segment.is_final,
            )
            await self._on_segment(segment)

        elif msg_type == "error":
            logger.error("Deepgram error", error=data.get("message", "Unknown"))


class TranscriptionManager:
    """
    Keeps one call's transcription alive across stream failures.

    Never raises into the media path: failures are logged, reported through
    `on_error`, and healed by recreating the stream.
    """

    def __init__(
        self,
        call_id: str,
        factory: StreamFactory,
        on_segment: SegmentCallback,
        on_error: Optional[ErrorCallback] = None,
        config: Optional[Config] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if config is None:
            config = get_config()

        self.call_id = call_id
        self.config = config
        self._factory = factory
        self._on_segment = on_segment
        self._on_error = on_error
        self._clock = clock
        self._interval_s = config.transcription_recreate_interval_seconds
        self._buffer: Deque[bytes] = deque(maxlen=max(1, config.transcription_buffer_frames))
        self._stream: Optional[TranscriptionStream] = None
        self._recreate_task: Optional[asyncio.Task] = None
        self._last_recreate_at = 0.0
        self._closed = False
        self.recreate_count = 0
        self.dropped_frames = 0

    @property
    def stream(self) -> Optional[TranscriptionStream]:
        return self._stream

    @property
    def buffered_frames(self) -> int:
        return len(self._buffer)

    @property
    def recreating(self) -> bool:
        return self._recreate_task is not None and not self._recreate_task.done()

    async def start(self) -> bool:
        self._stream = self._factory(self._handle_segment, self._handle_error)
        try:
            ok = await self._stream.connect()
        except Exception as e:
            logger.error("Transcription start failed", call_id=self.call_id, error=str(e))
            ok = False

        if not ok:
            self._schedule_recreate("initial connect failed")
        return ok

    async def send_audio(self, frame: bytes) -> None:
        if self._closed or not frame:
            return

        stream = self._stream
        if stream is None or self.recreating or not stream.is_connected:
            self._buffer_frame(frame)
            self._schedule_recreate("stream unavailable")
            return

        try:
            await stream.send_audio(frame)
        except TranscriptionWriteError as e:
            logger.warning("Transcription write failed", call_id=self.call_id, error=str(e))
            self._buffer_frame(frame)
            self._schedule_recreate("write failed")

    async def stop(self) -> None:
        self._closed = True
        if self._recreate_task is not None:
            self._recreate_task.cancel()
            await asyncio.gather(self._recreate_task, return_exceptions=True)
            self._recreate_task = None

        stream, self._stream = self._stream, None
        if stream is not None:
            await self._close_stream(stream)

        if self._buffer:
            logger.debug("Discarding buffered audio", call_id=self.call_id, frames=len(self._buffer))
            self._buffer.clear()

    def _buffer_frame(self, frame: bytes) -> None:
        if len(self._buffer) == self._buffer.maxlen:
            self.dropped_frames += 1
        self._buffer.append(frame)

    async def _handle_segment(self, segment: TranscriptSegment) -> None:
        if self._closed:
            return
        await self._on_segment(segment)

    async def _handle_error(self, error: BaseException) -> None:
        if self._closed:
            return
        logger.warning(
            "Transcription stream error",
            call_id=self.call_id,
            error_type=type(error).__name__,
            error=str(error),
        )
        if self._on_error is not None:
            try:
                await self._on_error(error)
            except Exception as e:
                logger.error("Transcription error handler failed", call_id=self.call_id, error=str(e))
        self._schedule_recreate("stream error")

    def _schedule_recreate(self, reason: str) -> None:
        if self._closed or self.recreating:
            return
        self._recreate_task = asyncio.get_running_loop().create_task(self._recreate(reason))

    async def _recreate(self, reason: str) -> None:
        wait = self._interval_s - (self._clock() - self._last_recreate_at)
        if self._last_recreate_at and wait > 0:
            await asyncio.sleep(wait)

        while not self._closed:
            self._last_recreate_at = self._clock()
            previous = self._stream
            candidate = self._factory(self._handle_segment, self._handle_error)
            try:
                ok = await candidate.connect()
            except Exception as e:
                logger.warning("Transcription reconnect raised", call_id=self.call_id, error=str(e))
                ok = False

            if ok:
                self._stream = candidate
                self.recreate_count += 1
                logger.info(
                    "Transcription stream recreated",
                    call_id=self.call_id,
                    reason=reason,
                    recreate_count=self.recreate_count,
                    buffered_frames=len(self._buffer),
                )
                if previous is not None and previous is not candidate:
                    await self._close_stream(previous)
                if await self._flush_buffer():
                    return
                reason = "flush failed"
            else:
                await self._close_stream(candidate)

            await asyncio.sleep(self._interval_s)

    async def _flush_buffer(self) -> bool:
        while self._buffer and not self._closed and self._stream is not None:
            frame = self._buffer.popleft()
            try:
                await self._stream.send_audio(frame)
            except TranscriptionWriteError as e:
                logger.warning("Buffered audio flush failed", call_id=self.call_id, error=str(e))
                self._buffer.appendleft(frame)
                return False
        return True

    async def _close_stream(self, stream: TranscriptionStream) -> None:
        try:
            await stream.close()
        except Exception as e:
            logger.warning("Error closing transcription stream", call_id=self.call_id, error=str(e))


def deepgram_stream_factory(config: Optional[Config] = None) -> StreamFactory:
    if config is None:
        config = get_config()

    def factory(on_segment: SegmentCallback, on_error: ErrorCallback) -> TranscriptionStream:
        return DeepgramTranscriptionStream(on_segment, on_error, config)

    return factory
