"""
Reply stream coordination.

One generation cycle per complete utterance:

    begin() -> new epoch -> generator subscription -> paced sentence chunks
            -> dispatcher -> history

A cycle owns exactly one epoch. When the session's epoch moves on (confirmed
interruption, hangup) the cycle notices at its next suspension point, cancels
its subscription and exits without touching history or cooldown timestamps.
"""

from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

import structlog

from src.voicedesk.config import Config, get_config
from src.voicedesk.dispatcher import PlaybackDispatcher
from src.voicedesk.errors import GenerationError
from src.voicedesk.fallback import FallbackResponder, ResponseCache, quick_reply, redirect_message
from src.voicedesk.generator import ReplyGenerator, ReplySubscription
from src.voicedesk.segmenter import UtteranceSegmenter
from src.voicedesk.session import ReplyChunk, Session, SessionPhase, Speaker
from src.voicedesk.text import phrase_pattern, redact_for_logs, strip_punctuation

logger = structlog.get_logger(__name__)

_SENTENCE_END_RE = re.compile(r"[.!?]+[\"')\]]*(?=\s|$)")


class ReplyOutcome(str, Enum):
    COMPLETED = "completed"
    FALLBACK = "fallback"
    QUICK_REPLY = "quick_reply"
    REDIRECTED = "redirected"
    ABANDONED = "abandoned"


class _Abandoned(Exception):
    """The cycle's epoch is no longer current."""


class ChunkPacer:
    """
    Cuts a growing reply into sentence-terminated chunks.

    The first chunk must be a complete sentence of at least `min_first_chars`;
    later chunks wait `spacing_s` after the previous one. Text after the last
    sentence boundary stays buffered until a later update or the final flush.
    """

    def __init__(self, segmenter: UtteranceSegmenter, min_first_chars: int, spacing_s: float):
        self._segmenter = segmenter
        self.min_first_chars = min_first_chars
        self.spacing_s = spacing_s
        self.emitted_upto = 0
        self.first_sent = False
        self.last_emit_at = 0.0

    @staticmethod
    def _last_boundary(text: str) -> Optional[int]:
        end = None
        for match in _SENTENCE_END_RE.finditer(text):
            end = match.end()
        return end

    def take(self, text: str, now: float) -> Optional[str]:
        pending = text[self.emitted_upto:]
        end = self._last_boundary(pending)
        if end is None:
            return None

        candidate = pending[:end].strip()
        if not candidate:
            return None

        if not self.first_sent:
            if not self._segmenter.ends_sentence(candidate):
                return None
            if len(candidate) < self.min_first_chars:
                return None
        elif now - self.last_emit_at < self.spacing_s:
            return None

        self.emitted_upto += end
        self.first_sent = True
        self.last_emit_at = now
        return candidate

    def flush(self, final_text: str) -> Optional[str]:
        tail = final_text[self.emitted_upto:].strip()
        self.emitted_upto = len(final_text)
        return tail or None

    def note_emit(self, now: float) -> None:
        self.last_emit_at = now

    def wait_time(self, now: float) -> float:
        if not self.last_emit_at:
            return 0.0
        return max(0.0, self.spacing_s - (now - self.last_emit_at))


@dataclass
class _Cycle:
    epoch: int
    utterance: str
    pacer: ChunkPacer
    sequence: int = 0
    spoken: List[str] = field(default_factory=list)
    emitted_content: bool = False
    filler_sent: bool = False
    redirected: bool = False


class ReplyStreamCoordinator:
    """Drives generation cycles and owns their subscriptions."""

    def __init__(
        self,
        generator: ReplyGenerator,
        dispatcher: PlaybackDispatcher,
        segmenter: Optional[UtteranceSegmenter] = None,
        config: Optional[Config] = None,
        cache: Optional[ResponseCache] = None,
        clock: Callable[[], float] = time.time,
    ):
        if config is None:
            config = get_config()

        self.config = config
        self._generator = generator
        self._dispatcher = dispatcher
        self._segmenter = segmenter or UtteranceSegmenter(config)
        self._clock = clock
        self.cache = cache or ResponseCache(ttl_seconds=config.response_cache_ttl_seconds, clock=clock)
        self._fallback = FallbackResponder(self.cache)
        self._unrelated_re = phrase_pattern(config.unrelated_topics)
        self._active: Dict[str, Set[ReplySubscription]] = {}

    def is_unrelated(self, utterance: str) -> bool:
        return bool(self._unrelated_re.search(strip_punctuation(utterance)))

    def begin(self, session: Session, utterance: str, now: Optional[float] = None) -> int:
        """
        Open a new cycle: bump the epoch and mark a reply in flight.

        Synchronous so the previous epoch is invalidated before any other
        coroutine runs.
        """
        if now is None:
            now = self._clock()

        session.generation_epoch += 1
        session.reply_in_flight = True
        session.last_generation_started_at = now
        session.resume_playback()
        session.transition(SessionPhase.GENERATING)
        session.record(Speaker.USER, utterance, now)

        logger.info(
            "Reply cycle started",
            call_id=session.call_id,
            epoch=session.generation_epoch,
            utterance=redact_for_logs(utterance),
        )
        return session.generation_epoch

    async def run(self, session: Session, utterance: str, epoch: int) -> ReplyOutcome:
        cycle = _Cycle(
            epoch=epoch,
            utterance=utterance,
            pacer=ChunkPacer(
                self._segmenter,
                min_first_chars=self.config.min_first_chunk_chars,
                spacing_s=self.config.chunk_spacing_ms / 1000.0,
            ),
        )

        try:
            quick = quick_reply(utterance) if self.config.quick_replies_enabled else None
            if quick:
                await self._emit(session, cycle, quick)
                return await self._finish(session, cycle, ReplyOutcome.QUICK_REPLY)

            ack_task = asyncio.create_task(self._acknowledge(session, cycle))
            try:
                final_text = await self._generate_with_retry(session, cycle)
            finally:
                # A filler or redirect already being spoken is allowed to finish.
                if not (cycle.filler_sent or cycle.redirected):
                    ack_task.cancel()
                await asyncio.gather(ack_task, return_exceptions=True)

            self._check_epoch(session, cycle)

            if cycle.redirected:
                return await self._finish(session, cycle, ReplyOutcome.REDIRECTED)

            if final_text is None:
                if cycle.emitted_content:
                    return await self._finish(session, cycle, ReplyOutcome.COMPLETED)
                text, source = self._fallback.resolve(utterance)
                logger.warning(
                    "Reply generation failed, using fallback",
                    call_id=session.call_id,
                    epoch=epoch,
                    source=source,
                )
                await self._emit(session, cycle, text)
                return await self._finish(session, cycle, ReplyOutcome.FALLBACK)

            tail = cycle.pacer.flush(final_text)
            if tail:
                await self._await_resume(session, cycle)
                delay = cycle.pacer.wait_time(self._clock())
                if delay > 0:
                    await asyncio.sleep(delay)
                await self._emit(session, cycle, tail)

            self.cache.put(utterance, final_text)
            return await self._finish(session, cycle, ReplyOutcome.COMPLETED)

        except _Abandoned:
            logger.info(
                "Reply cycle abandoned",
                call_id=session.call_id,
                epoch=epoch,
                current_epoch=session.generation_epoch,
                chunks_dispatched=len(cycle.spoken),
            )
            return ReplyOutcome.ABANDONED

    def cancel(self, call_id: str) -> None:
        """Teardown hook: cancel every live subscription for the call."""
        subscriptions = self._active.pop(call_id, set())
        for subscription in subscriptions:
            subscription.cancel()
        if subscriptions:
            logger.info("Pending generation cancelled", call_id=call_id, subscriptions=len(subscriptions))

    def _check_epoch(self, session: Session, cycle: _Cycle) -> None:
        if session.generation_epoch != cycle.epoch or session.is_ended:
            raise _Abandoned()

    async def _emit(self, session: Session, cycle: _Cycle, text: str, *, content: bool = True) -> bool:
        self._check_epoch(session, cycle)

        chunk = ReplyChunk(text=text, sequence=cycle.sequence, epoch=cycle.epoch)
        cycle.sequence += 1
        if content:
            cycle.emitted_content = True

        ok = await self._dispatcher.dispatch(session, chunk)
        self._check_epoch(session, cycle)

        if ok:
            cycle.pacer.note_emit(self._clock())
            if content:
                cycle.spoken.append(text)
        return ok

    async def _acknowledge(self, session: Session, cycle: _Cycle) -> None:
        """Acknowledgment race: say something if the generator is slow to produce content."""
        try:
            await asyncio.sleep(self.config.ack_timeout_ms / 1000.0)
            if cycle.emitted_content or session.generation_epoch != cycle.epoch:
                return

            if not session.has_assistant_reply and self.is_unrelated(cycle.utterance):
                logger.info("Unrelated topic at conversation start, redirecting", call_id=session.call_id)
                cycle.redirected = True
                for subscription in list(self._active.get(session.call_id, ())):
                    subscription.cancel()
                await self._emit(session, cycle, redirect_message(self.config.company_name))
                return

            cycle.filler_sent = True
            logger.info("Acknowledgment timer fired, sending filler", call_id=session.call_id, epoch=cycle.epoch)
            await self._emit(session, cycle, self.config.ack_filler_text, content=False)
        except _Abandoned:
            return

    async def _await_resume(self, session: Session, cycle: _Cycle) -> None:
        """Hold the final flush while a soft interruption is pending."""
        if not session.playback_paused:
            return
        try:
            await asyncio.wait_for(
                session.playback_resumed.wait(),
                timeout=self.config.soft_pause_timeout_ms / 1000.0,
            )
        except asyncio.TimeoutError:
            logger.info("Soft pause expired, resuming reply", call_id=session.call_id, epoch=cycle.epoch)
            session.resume_playback()
        self._check_epoch(session, cycle)

    def _backoff_seconds(self, attempt: int, error: Optional[BaseException]) -> float:
        base = self.config.retry_backoff_base_ms * (2 ** max(0, attempt - 2))
        delay_ms = min(base, self.config.retry_backoff_max_ms)
        if isinstance(error, GenerationError) and error.rate_limited:
            delay_ms += self.config.rate_limit_backoff_ms * (attempt - 1)
        return delay_ms / 1000.0

    async def _generate_with_retry(self, session: Session, cycle: _Cycle) -> Optional[str]:
        history = session.history
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.config.generator_max_attempts + 1):
            if attempt > 1:
                delay = self._backoff_seconds(attempt, last_error)
                logger.info("Retrying reply generation", call_id=session.call_id, attempt=attempt, delay_s=delay)
                await asyncio.sleep(delay)

            self._check_epoch(session, cycle)
            if cycle.redirected:
                return None

            subscription = self._generator.stream(cycle.utterance, history)
            live = self._active.setdefault(session.call_id, set())
            live.add(subscription)
            try:
                return await self._consume(session, cycle, subscription)
            except _Abandoned:
                subscription.cancel()
                raise
            except Exception as e:
                subscription.cancel()
                last_error = e
                logger.warning(
                    "Reply generation attempt failed",
                    call_id=session.call_id,
                    epoch=cycle.epoch,
                    attempt=attempt,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                # Once the caller has heard part of this reply a restart would repeat it.
                if cycle.emitted_content:
                    return None
            finally:
                live.discard(subscription)
                if not live and self._active.get(session.call_id) is live:
                    del self._active[session.call_id]

        return None

    async def _consume(self, session: Session, cycle: _Cycle, subscription: ReplySubscription) -> Optional[str]:
        last_text = ""
        while True:
            update = await asyncio.wait_for(
                subscription.next(),
                timeout=self.config.generator_timeout_seconds,
            )
            self._check_epoch(session, cycle)

            if update is None:
                if cycle.redirected or subscription.cancelled:
                    return None
                if last_text:
                    return last_text
                raise GenerationError("Reply stream ended without content")

            last_text = update.text
            if update.is_final:
                return update.text

            if session.playback_paused:
                continue

            chunk_text = cycle.pacer.take(update.text, self._clock())
            if chunk_text:
                await self._emit(session, cycle, chunk_text)

    async def _finish(self, session: Session, cycle: _Cycle, outcome: ReplyOutcome) -> ReplyOutcome:
        now = self._clock()
        async with session.lock:
            if session.generation_epoch != cycle.epoch or session.is_ended:
                raise _Abandoned()

            reply = " ".join(cycle.spoken).strip()
            if reply:
                session.record(Speaker.ASSISTANT, reply, now)
            session.reply_in_flight = False
            session.last_reply_at = now
            session.resume_playback()
            session.transition(
                SessionPhase.SEGMENTING if session.pending_transcript else SessionPhase.LISTENING
            )

        logger.info(
            "Reply cycle finished",
            call_id=session.call_id,
            epoch=cycle.epoch,
            outcome=outcome.value,
            chunks=len(cycle.spoken),
            filler_sent=cycle.filler_sent,
        )
        return outcome
