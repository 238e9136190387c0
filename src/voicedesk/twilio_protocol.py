"""
Twilio Media Streams WebSocket protocol (inbound direction).

Twilio sends JSON messages with events:
- connected: Initial connection
- start: Stream started, contains streamSid, callSid and custom parameters
- media: Audio data as base64 mu-law 8kHz
- stop: Stream stopped

Replies are not streamed back over this socket; they are spoken through
call-control updates (see dispatcher.py), so only the inbound side is parsed.
Mark and dtmf events belong to bidirectional streams and are not expected.
"""

import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

import msgspec
import structlog

logger = structlog.get_logger(__name__)

decoder = msgspec.json.Decoder()


class TwilioEventType(str, Enum):
    """Twilio WebSocket event types."""
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    STOP = "stop"


@dataclass
class TwilioStartEvent:
    """Parsed Twilio start event."""
    stream_sid: str
    call_sid: str
    account_sid: str
    tracks: List[str]
    media_format: Dict[str, Any] = field(default_factory=dict)
    custom_parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStartEvent":
        start = message.get("start", {}) or {}
        return cls(
            stream_sid=message.get("streamSid", "") or start.get("streamSid", ""),
            call_sid=start.get("callSid", ""),
            account_sid=start.get("accountSid", ""),
            tracks=start.get("tracks", []),
            media_format=start.get("mediaFormat", {}) or {},
            custom_parameters=start.get("customParameters", {}) or {},
        )

    def call_metadata(self) -> Dict[str, Any]:
        """Metadata recorded on the session when the call starts."""
        metadata: Dict[str, Any] = {
            "stream_sid": self.stream_sid,
            "account_sid": self.account_sid,
        }
        if self.media_format:
            metadata["media_format"] = dict(self.media_format)
        metadata.update(self.custom_parameters)
        return metadata


@dataclass
class TwilioMediaEvent:
    """Parsed Twilio media event."""
    stream_sid: str
    track: str
    chunk: int
    timestamp: str
    payload: bytes  # mu-law

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMediaEvent":
        media = message.get("media", {}) or {}
        try:
            payload = base64.b64decode(media.get("payload", ""))
        except (binascii.Error, ValueError):
            logger.debug("Undecodable media payload", stream_sid=message.get("streamSid", ""))
            payload = b""

        return cls(
            stream_sid=message.get("streamSid", ""),
            track=media.get("track", "inbound"),
            chunk=int(media.get("chunk", 0) or 0),
            timestamp=str(media.get("timestamp", "")),
            payload=payload,
        )


@dataclass
class TwilioStopEvent:
    stream_sid: str
    call_sid: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStopEvent":
        stop = message.get("stop", {}) or {}
        return cls(stream_sid=message.get("streamSid", ""), call_sid=stop.get("callSid", ""))


TwilioEvent = Union[
    Dict[str, Any],
    TwilioStartEvent,
    TwilioMediaEvent,
    TwilioStopEvent,
]


def parse_twilio_message(raw_message: Union[str, bytes]) -> Tuple[TwilioEventType, TwilioEvent]:
    """
    Parse a raw Twilio WebSocket message.

    Raises:
        ValueError: If the message is not JSON or has an unknown event type
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        logger.error("Failed to parse Twilio message", error=str(e))
        raise ValueError(f"Invalid JSON: {e}") from e

    if not isinstance(message, dict):
        raise ValueError("Twilio message is not a JSON object")

    event_type_str = message.get("event", "")
    try:
        event_type = TwilioEventType(event_type_str)
    except ValueError:
        logger.warning("Unknown Twilio event type", event_type=event_type_str)
        raise ValueError(f"Unknown event type: {event_type_str}")

    if event_type == TwilioEventType.START:
        return event_type, TwilioStartEvent.from_message(message)
    if event_type == TwilioEventType.MEDIA:
        return event_type, TwilioMediaEvent.from_message(message)
    if event_type == TwilioEventType.STOP:
        return event_type, TwilioStopEvent.from_message(message)
    return event_type, message


class MediaStreamState:
    """Tracks which call one media WebSocket belongs to."""

    def __init__(self) -> None:
        self.stream_sid = ""
        self.call_sid: Optional[str] = None
        self.frames_received = 0
        self.is_active = False

    def handle_start(self, event: TwilioStartEvent) -> None:
        self.stream_sid = event.stream_sid
        self.call_sid = event.call_sid or None
        self.is_active = True
        logger.info("Media stream started", stream_sid=event.stream_sid, call_sid=event.call_sid)

    def handle_media(self, event: TwilioMediaEvent) -> bool:
        """Count an inbound frame; False for frames outside an active stream or track."""
        if not self.is_active or event.track not in ("inbound", "inbound_track"):
            return False
        self.frames_received += 1
        return True

    def handle_stop(self) -> None:
        if self.is_active:
            logger.info(
                "Media stream stopped",
                stream_sid=self.stream_sid,
                call_sid=self.call_sid,
                frames_received=self.frames_received,
            )
        self.is_active = False
