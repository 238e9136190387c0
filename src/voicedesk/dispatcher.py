"""
Outbound call-control updates.

Every update replaces the call's TwiML wholesale, so two updates racing each
other would drop content. The dispatcher holds the session's dispatch lock for
the whole round-trip and drops chunks whose epoch is no longer current.
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Optional, Protocol, Set

import structlog
from twilio.base.exceptions import TwilioException
from twilio.rest import Client as TwilioClient
from twilio.twiml.voice_response import VoiceResponse

from src.voicedesk.config import Config, get_config
from src.voicedesk.session import ReplyChunk, Session, SessionPhase
from src.voicedesk.text import redact_for_logs

logger = structlog.get_logger(__name__)


class CallControl(Protocol):
    async def update_call(
        self,
        call_id: str,
        spoken_text: str,
        continue_listening: bool,
        hangup: bool,
    ) -> bool:
        ...


def build_twiml(
    spoken_text: str,
    *,
    continue_listening: bool,
    hangup: bool,
    voice: str,
    language: str,
    pause_seconds: int,
) -> str:
    """TwiML for one update: say the text, then either keep the line open or hang up."""
    response = VoiceResponse()
    if spoken_text:
        response.say(spoken_text, voice=voice, language=language)
    if hangup:
        response.hangup()
    elif continue_listening:
        response.pause(length=pause_seconds)
    return str(response)


class TwilioCallControl:
    """Applies TwiML updates to live calls through the Twilio REST API."""

    def __init__(self, config: Optional[Config] = None, client: Optional[TwilioClient] = None):
        if config is None:
            config = get_config()

        self.config = config
        self._client = client or TwilioClient(config.twilio_account_sid, config.twilio_auth_token)

    async def update_call(
        self,
        call_id: str,
        spoken_text: str,
        continue_listening: bool,
        hangup: bool,
    ) -> bool:
        twiml = build_twiml(
            spoken_text,
            continue_listening=continue_listening,
            hangup=hangup,
            voice=self.config.twilio_voice,
            language=self.config.twilio_language,
            pause_seconds=self.config.keep_listening_pause_seconds,
        )
        try:
            # The Twilio client is synchronous; keep it off the event loop.
            await asyncio.to_thread(self._client.calls(call_id).update, twiml=twiml)
            return True
        except TwilioException as e:
            logger.error(
                "Twilio call update failed",
                call_id=call_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False


HangupCallback = Callable[[str], Awaitable[None]]


class PlaybackDispatcher:
    """Serializes call-control updates per session."""

    def __init__(
        self,
        call_control: CallControl,
        config: Optional[Config] = None,
        on_hangup: Optional[HangupCallback] = None,
        clock: Callable[[], float] = time.time,
    ):
        if config is None:
            config = get_config()

        self.config = config
        self._call_control = call_control
        self._on_hangup = on_hangup
        self._clock = clock
        self.total_dispatched = 0
        self.total_dropped = 0
        self.total_failed = 0
        self._background: Set[asyncio.Task] = set()

    def set_hangup_callback(self, callback: HangupCallback) -> None:
        self._on_hangup = callback

    async def dispatch(self, session: Session, chunk: ReplyChunk) -> bool:
        """Speak one chunk and keep listening. Stale or post-hangup chunks are dropped."""
        async with session.dispatch_lock:
            if session.is_ended:
                self.total_dropped += 1
                return False
            if chunk.epoch != session.generation_epoch:
                self.total_dropped += 1
                logger.debug(
                    "Dropping stale chunk",
                    call_id=session.call_id,
                    chunk_epoch=chunk.epoch,
                    current_epoch=session.generation_epoch,
                    sequence=chunk.sequence,
                )
                return False

            ok = await self._send(session, chunk.text, continue_listening=True, hangup=False)
            if ok:
                # Only spoken reply chunks start the interruption grace period.
                session.last_reply_dispatch_at = self._clock()
                logger.info(
                    "Chunk dispatched",
                    call_id=session.call_id,
                    epoch=chunk.epoch,
                    sequence=chunk.sequence,
                    text=redact_for_logs(chunk.text),
                )
                if session.phase in (SessionPhase.GENERATING, SessionPhase.LISTENING, SessionPhase.SEGMENTING):
                    session.transition(SessionPhase.STREAMING)
            return ok

    async def keep_listening(self, session: Session) -> bool:
        """Minimal update with nothing to say: stop talking, keep the line open."""
        async with session.dispatch_lock:
            if session.is_ended:
                return False
            return await self._send(session, "", continue_listening=True, hangup=False)

    async def say_goodbye(self, session: Session, text: str) -> bool:
        """Speak the closing line with a hangup directive, then tear the session down."""
        async with session.dispatch_lock:
            ok = await self._send(session, text, continue_listening=False, hangup=True)
            session.end()

        logger.info("Goodbye dispatched", call_id=session.call_id, confirmed=ok)
        if self._on_hangup is not None:
            await self._on_hangup(session.call_id)
        return ok

    async def _send(self, session: Session, text: str, *, continue_listening: bool, hangup: bool) -> bool:
        try:
            ok = await self._call_control.update_call(
                session.call_id,
                text,
                continue_listening,
                hangup,
            )
        except Exception as e:
            logger.error(
                "Call-control update raised",
                call_id=session.call_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            ok = False

        if ok:
            self.total_dispatched += 1
            session.dispatch_failures = 0
            return True

        self.total_failed += 1
        session.degraded = True
        session.dispatch_failures += 1
        logger.warning(
            "Dispatch failed, session degraded",
            call_id=session.call_id,
            consecutive_failures=session.dispatch_failures,
        )

        if not hangup and session.dispatch_failures >= self.config.max_dispatch_failures:
            logger.error(
                "Dispatch failures exhausted, ending session",
                call_id=session.call_id,
                consecutive_failures=session.dispatch_failures,
            )
            session.end()
            if self._on_hangup is not None:
                # Teardown runs outside the dispatch lock we are holding.
                task = asyncio.get_running_loop().create_task(self._on_hangup(session.call_id))
                self._background.add(task)
                task.add_done_callback(self._background.discard)
        return False
