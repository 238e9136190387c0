"""
Per-call session state and the registry that owns it.

A Session is created when a call starts and destroyed only when the call ends
(hangup signal or a goodbye). Field mutations that span an `await` go through
`session.lock`; outbound call-control updates go through `session.dispatch_lock`.
The registry has its own lock so destroying one call never waits on another.
"""

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)


class SessionPhase(str, Enum):
    """Lifecycle phase of a call session."""
    LISTENING = "listening"
    SEGMENTING = "segmenting"
    GENERATING = "generating"
    STREAMING = "streaming"
    ENDED = "ended"


class Speaker(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class TranscriptSegment:
    """A single interim or final transcription event."""
    text: str
    is_final: bool
    received_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ReplyChunk:
    """One unit of reply text bound to the generation epoch that produced it."""
    text: str
    sequence: int
    epoch: int


@dataclass(frozen=True)
class HistoryEntry:
    speaker: Speaker
    text: str
    timestamp: float


@dataclass
class Session:
    """Mutable state for one active call."""
    call_id: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    phase: SessionPhase = SessionPhase.LISTENING
    pending_transcript: str = ""
    utterance_ready: bool = False
    last_transcript_at: float = 0.0
    last_reply_dispatch_at: float = 0.0
    last_reply_at: float = 0.0
    last_generation_started_at: float = 0.0
    reply_in_flight: bool = False
    generation_epoch: int = 0
    degraded: bool = False
    dispatch_failures: int = 0
    created_at: float = field(default_factory=time.time)
    _history: List[HistoryEntry] = field(default_factory=list, repr=False)

    # Runtime handles owned by this call.
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    dispatch_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    playback_resumed: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    segments: "asyncio.Queue[TranscriptSegment]" = field(default_factory=asyncio.Queue, repr=False)
    transcription: Any = field(default=None, repr=False)
    task: Optional[asyncio.Task] = field(default=None, repr=False)
    generation_task: Optional[asyncio.Task] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        self.playback_resumed.set()

    @property
    def history(self) -> List[HistoryEntry]:
        """Snapshot of the conversation history (oldest first)."""
        return list(self._history)

    @property
    def is_ended(self) -> bool:
        return self.phase == SessionPhase.ENDED

    @property
    def playback_paused(self) -> bool:
        return not self.playback_resumed.is_set()

    @property
    def has_assistant_reply(self) -> bool:
        return any(entry.speaker == Speaker.ASSISTANT for entry in self._history)

    def record(self, speaker: Speaker, text: str, now: Optional[float] = None) -> HistoryEntry:
        """Append a history entry; timestamps never go backwards."""
        timestamp = time.time() if now is None else now
        if self._history and timestamp < self._history[-1].timestamp:
            timestamp = self._history[-1].timestamp
        entry = HistoryEntry(speaker=speaker, text=text, timestamp=timestamp)
        self._history.append(entry)
        return entry

    def transition(self, phase: SessionPhase) -> bool:
        """Move to `phase`. ENDED is terminal."""
        if self.phase == SessionPhase.ENDED:
            return self.phase == phase
        if self.phase != phase:
            logger.debug(
                "Session phase change",
                call_id=self.call_id,
                previous=self.phase.value,
                phase=phase.value,
            )
        self.phase = phase
        return True

    def pause_playback(self) -> None:
        self.playback_resumed.clear()

    def resume_playback(self) -> None:
        self.playback_resumed.set()

    def end(self) -> None:
        """Mark the session ended and invalidate any in-flight generation."""
        if self.phase == SessionPhase.ENDED:
            return
        self.phase = SessionPhase.ENDED
        self.generation_epoch += 1
        self.reply_in_flight = False
        self.playback_resumed.set()


TeardownListener = Callable[[str], None]


class SessionStore:
    """Registry of active sessions keyed by call id."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()
        self._listeners: List[TeardownListener] = []

    def add_teardown_listener(self, listener: TeardownListener) -> None:
        """Register a callback invoked with the call id after a session is destroyed."""
        with self._lock:
            self._listeners.append(listener)

    def create(self, call_id: str, metadata: Optional[Dict[str, Any]] = None) -> Session:
        """Create a session, or return the existing one for a duplicate start."""
        with self._lock:
            existing = self._sessions.get(call_id)
            if existing is not None:
                logger.warning("Duplicate call start, reusing session", call_id=call_id)
                if metadata:
                    existing.metadata.update(metadata)
                return existing
            session = Session(call_id=call_id, metadata=dict(metadata or {}))
            self._sessions[call_id] = session

        logger.info("Session created", call_id=call_id, active_sessions=len(self))
        return session

    def get(self, call_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(call_id)

    def destroy(self, call_id: str) -> Optional[Session]:
        """Remove a session and notify teardown listeners. Unknown ids are a no-op."""
        with self._lock:
            session = self._sessions.pop(call_id, None)
            listeners = list(self._listeners)

        if session is None:
            logger.warning("Call end for unknown session", call_id=call_id)
            return None

        session.end()
        for listener in listeners:
            try:
                listener(call_id)
            except Exception as e:
                logger.error(
                    "Session teardown listener failed",
                    call_id=call_id,
                    error_type=type(e).__name__,
                    error=str(e),
                )

        logger.info(
            "Session destroyed",
            call_id=call_id,
            history_entries=len(session.history),
            active_sessions=len(self),
        )
        return session

    def active_call_ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, call_id: object) -> bool:
        with self._lock:
            return call_id in self._sessions
