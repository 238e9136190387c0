"""
Per-call orchestration.

Wires transcription, segmentation, interruption handling, reply generation and
call-control dispatch for every active call. Each call gets one worker task
that consumes transcript segments in arrival order and runs the periodic
silence/cooldown tick; reply generation runs in its own task so a new segment
can interrupt it.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Dict, Optional, Set

import structlog

from src.voicedesk.config import Config, get_config
from src.voicedesk.coordinator import ReplyOutcome, ReplyStreamCoordinator
from src.voicedesk.dispatcher import PlaybackDispatcher
from src.voicedesk.fallback import goodbye_message
from src.voicedesk.interruption import InterruptionKind, InterruptionMonitor
from src.voicedesk.segmenter import UtteranceSegmenter, UtteranceVerdict
from src.voicedesk.session import Session, SessionPhase, SessionStore, Speaker, TranscriptSegment
from src.voicedesk.text import redact_for_logs
from src.voicedesk.transcription import StreamFactory, TranscriptionManager

logger = structlog.get_logger(__name__)


class SessionOrchestrator:
    """Entry point for call lifecycle events, media frames and transcript segments."""

    def __init__(
        self,
        coordinator: ReplyStreamCoordinator,
        dispatcher: PlaybackDispatcher,
        config: Optional[Config] = None,
        store: Optional[SessionStore] = None,
        segmenter: Optional[UtteranceSegmenter] = None,
        monitor: Optional[InterruptionMonitor] = None,
        transcription_factory: Optional[StreamFactory] = None,
        clock: Callable[[], float] = time.time,
    ):
        if config is None:
            config = get_config()

        self.config = config
        self.store = store or SessionStore()
        self.segmenter = segmenter or UtteranceSegmenter(config)
        self.monitor = monitor or InterruptionMonitor(config)
        self.coordinator = coordinator
        self.dispatcher = dispatcher
        self._transcription_factory = transcription_factory
        self._clock = clock
        self._tick_s = config.loop_tick_ms / 1000.0
        self._generation_tasks: Set[asyncio.Task] = set()
        self.total_calls = 0

        self.store.add_teardown_listener(self.coordinator.cancel)
        self.store.add_teardown_listener(self.monitor.forget)
        self.dispatcher.set_hangup_callback(self.on_call_ended)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def on_call_started(self, call_id: str, metadata: Optional[Dict[str, Any]] = None) -> Session:
        """Create the session and start its transcription and worker. Idempotent per call id."""
        session = self.store.create(call_id, metadata)
        if session.task is not None:
            return session

        self.total_calls += 1
        session.task = asyncio.create_task(self._run_call(session))

        if self._transcription_factory is not None:
            manager = TranscriptionManager(
                call_id,
                self._transcription_factory,
                on_segment=lambda segment: self.on_segment(call_id, segment),
                on_error=lambda error: self._on_transcription_error(call_id, error),
                config=self.config,
            )
            session.transcription = manager
            await manager.start()

        logger.info("Call started", call_id=call_id, metadata_keys=sorted(session.metadata))
        return session

    async def on_call_ended(self, call_id: str) -> None:
        """Tear the session down. Safe to call repeatedly and from within the call's own tasks."""
        session = self.store.destroy(call_id)
        if session is None:
            return

        if session.transcription is not None:
            await session.transcription.stop()

        current = asyncio.current_task()
        pending = [
            task for task in (session.task, session.generation_task)
            if task is not None and task is not current and not task.done()
        ]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        logger.info("Call ended", call_id=call_id, degraded=session.degraded)

    async def on_media_frame(self, call_id: str, frame: bytes) -> None:
        session = self.store.get(call_id)
        if session is None or session.is_ended or session.transcription is None:
            return
        await session.transcription.send_audio(frame)

    async def on_segment(self, call_id: str, segment: TranscriptSegment) -> None:
        """Queue a transcript segment for the call's worker."""
        session = self.store.get(call_id)
        if session is None or session.is_ended:
            logger.debug("Segment for inactive call dropped", call_id=call_id)
            return
        session.segments.put_nowait(segment)

    async def shutdown(self) -> None:
        for call_id in self.store.active_call_ids():
            await self.on_call_ended(call_id)

        tasks = [task for task in self._generation_tasks if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def metrics(self) -> Dict[str, Any]:
        return {
            "active_sessions": len(self.store),
            "total_calls": self.total_calls,
            "chunks_dispatched": self.dispatcher.total_dispatched,
            "chunks_dropped": self.dispatcher.total_dropped,
            "dispatch_failures": self.dispatcher.total_failed,
            "cached_replies": len(self.coordinator.cache),
        }

    async def _on_transcription_error(self, call_id: str, error: BaseException) -> None:
        logger.warning(
            "Transcription error reported",
            call_id=call_id,
            error_type=type(error).__name__,
        )

    # ------------------------------------------------------------------ #
    # Per-call worker
    # ------------------------------------------------------------------ #

    async def _run_call(self, session: Session) -> None:
        """Consume segments in order and run the silence/cooldown tick."""
        try:
            while not session.is_ended:
                try:
                    segment = await asyncio.wait_for(session.segments.get(), timeout=self._tick_s)
                except asyncio.TimeoutError:
                    segment = None

                if session.is_ended:
                    break

                try:
                    if segment is not None:
                        await self._handle_segment(session, segment)
                    await self._tick(session)
                except Exception as e:
                    logger.error(
                        "Segment handling failed",
                        call_id=session.call_id,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
        except asyncio.CancelledError:
            pass

    async def _handle_segment(self, session: Session, segment: TranscriptSegment) -> None:
        now = self._clock()

        if session.reply_in_flight:
            await self._handle_in_flight(session, segment, now)
            return

        async with session.lock:
            decision = self.segmenter.accept(session, segment, now)

        if decision.verdict == UtteranceVerdict.GOODBYE:
            await self._end_with_goodbye(session)
        elif decision.verdict == UtteranceVerdict.COMPLETE:
            session.utterance_ready = True
            await self._maybe_start_generation(session, now)

    async def _handle_in_flight(self, session: Session, segment: TranscriptSegment, now: float) -> None:
        kind = self.monitor.assess(session, segment, now)

        if kind == InterruptionKind.SOFT:
            session.last_transcript_at = now
            session.pause_playback()
            await self.dispatcher.keep_listening(session)
            return

        text = (segment.text or "").strip()

        if kind == InterruptionKind.CONFIRMED:
            async with session.lock:
                session.last_transcript_at = now
                session.pending_transcript = f"{session.pending_transcript} {text}".strip()
                goodbye = self.segmenter.is_goodbye(session.pending_transcript)
                if not goodbye:
                    utterance = self.segmenter.take_utterance(session)
                    epoch = self.coordinator.begin(session, utterance, now)

            if goodbye:
                await self._end_with_goodbye(session)
            else:
                logger.info("Restarting reply from interruption", call_id=session.call_id, epoch=epoch)
                self._spawn_generation(session, utterance, epoch)
            return

        session.last_transcript_at = now
        if not segment.is_final:
            return

        # A final that didn't confirm the interruption releases a soft pause.
        session.resume_playback()
        if not text:
            return

        # Kept for the next cycle; the tick starts it once the reply finishes.
        async with session.lock:
            session.pending_transcript = f"{session.pending_transcript} {text}".strip()
            goodbye = self.segmenter.is_goodbye(session.pending_transcript)
            if not goodbye and self.segmenter.is_complete(session.pending_transcript):
                session.utterance_ready = True
        if goodbye:
            await self._end_with_goodbye(session)

    async def _tick(self, session: Session) -> None:
        if session.is_ended or session.reply_in_flight:
            return

        now = self._clock()
        if not session.utterance_ready:
            if not self.segmenter.silence_elapsed(session, now):
                return
            logger.debug("Silence threshold reached", call_id=session.call_id)
            session.utterance_ready = True

        await self._maybe_start_generation(session, now)

    async def _maybe_start_generation(self, session: Session, now: float) -> bool:
        async with session.lock:
            if session.is_ended or session.reply_in_flight or not session.utterance_ready:
                return False

            remaining = self.segmenter.cooldown_remaining(session, now)
            if remaining > 0:
                logger.debug(
                    "Generation deferred by cooldown",
                    call_id=session.call_id,
                    remaining_ms=round(remaining * 1000, 2),
                )
                return False

            utterance = self.segmenter.take_utterance(session)
            if not utterance:
                return False
            epoch = self.coordinator.begin(session, utterance, now)

        self._spawn_generation(session, utterance, epoch)
        return True

    def _spawn_generation(self, session: Session, utterance: str, epoch: int) -> asyncio.Task:
        task = asyncio.create_task(self._run_generation(session, utterance, epoch))
        session.generation_task = task
        self._generation_tasks.add(task)
        task.add_done_callback(self._generation_tasks.discard)
        return task

    async def _run_generation(self, session: Session, utterance: str, epoch: int) -> Optional[ReplyOutcome]:
        try:
            return await self.coordinator.run(session, utterance, epoch)
        except Exception as e:
            logger.error(
                "Reply cycle failed",
                call_id=session.call_id,
                epoch=epoch,
                error_type=type(e).__name__,
                error=str(e),
            )
            async with session.lock:
                if session.generation_epoch == epoch and not session.is_ended:
                    session.reply_in_flight = False
                    session.last_reply_at = self._clock()
                    session.resume_playback()
                    session.transition(SessionPhase.LISTENING)
            return None

    async def _end_with_goodbye(self, session: Session) -> None:
        """Close the call: record both sides, invalidate any reply, speak the goodbye and hang up."""
        now = self._clock()
        message = goodbye_message(self.config.company_name)

        async with session.lock:
            text = session.pending_transcript.strip()
            session.pending_transcript = ""
            session.utterance_ready = False
            session.generation_epoch += 1
            session.reply_in_flight = False
            if text:
                session.record(Speaker.USER, text, now)
            session.record(Speaker.ASSISTANT, message, now)

        logger.info("Ending call on goodbye", call_id=session.call_id, text=redact_for_logs(text))
        await self.dispatcher.say_goodbye(session, message)
