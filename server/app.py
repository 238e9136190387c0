"""
FastAPI server for the voice support agent.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- POST /incoming-call: TwiML for the Twilio voice webhook
- POST /call-status: Twilio call status callback
- WS /media: Twilio Media Streams WebSocket (inbound audio only)
"""

import sys
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request, Response
from fastapi.responses import JSONResponse
import structlog
import uvicorn
from twilio.twiml.voice_response import Start, VoiceResponse

from src.voicedesk.config import Config, ConfigError, get_config, init_config
from src.voicedesk.twilio_protocol import (
    MediaStreamState,
    TwilioEventType,
    parse_twilio_message,
)


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_level != "DEBUG" else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


logger = structlog.get_logger(__name__)

TERMINAL_CALL_STATUSES = frozenset({"completed", "busy", "failed", "no-answer", "canceled"})


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_connections: int = 0
    active_connections: int = 0
    status_callbacks: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "status_callbacks": self.status_callbacks,
            "errors": self.errors,
        }


metrics = ServerMetrics()


def build_orchestrator(config: Config):
    """Assemble the production orchestrator: Groq/OpenAI replies, Twilio updates, Deepgram transcription."""
    from src.voicedesk.coordinator import ReplyStreamCoordinator
    from src.voicedesk.dispatcher import PlaybackDispatcher, TwilioCallControl
    from src.voicedesk.generator import create_generator
    from src.voicedesk.orchestrator import SessionOrchestrator
    from src.voicedesk.segmenter import UtteranceSegmenter
    from src.voicedesk.transcription import deepgram_stream_factory

    segmenter = UtteranceSegmenter(config)
    dispatcher = PlaybackDispatcher(TwilioCallControl(config), config)
    generator = create_generator(config)
    coordinator = ReplyStreamCoordinator(generator, dispatcher, segmenter, config)
    orchestrator = SessionOrchestrator(
        coordinator,
        dispatcher,
        config=config,
        segmenter=segmenter,
        transcription_factory=deepgram_stream_factory(config),
    )
    return orchestrator, generator


def build_incoming_call_twiml(config: Config, caller: str = "") -> str:
    """
    TwiML for a new call: stream inbound audio to /media, greet, keep the line open.

    Replies are spoken later by replacing this TwiML through the REST API.
    """
    response = VoiceResponse()
    start = Start()
    stream = start.stream(url=config.media_ws_url, track="inbound_track")
    if caller:
        stream.parameter(name="From", value=caller)
    response.append(start)
    response.say(config.greeting, voice=config.twilio_voice, language=config.twilio_language)
    response.pause(length=config.keep_listening_pause_seconds)
    return str(response)


async def _form_params(request: Request) -> Dict[str, str]:
    """Twilio webhooks post application/x-www-form-urlencoded bodies."""
    params = dict(request.query_params)
    if request.method == "POST":
        form_data = await request.form()
        params.update({key: str(value) for key, value in form_data.items()})
    return params


def _orchestrator(app: FastAPI) -> Optional[Any]:
    return getattr(app.state, "orchestrator", None)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting voice support server...")

    try:
        config = init_config()
        configure_logging(config.log_level)

        orchestrator, generator = build_orchestrator(config)
        await generator.validate_model()
        app.state.orchestrator = orchestrator

        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host,
            media_ws_url=config.media_ws_url,
        )

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)
    except SystemExit:
        raise
    except Exception as e:
        logger.error("Startup failed", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...")
    orchestrator = _orchestrator(app)
    if orchestrator is not None:
        await orchestrator.shutdown()


app = FastAPI(
    title="Voice Support Agent",
    description="Real-time phone support agent on Twilio",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    orchestrator = _orchestrator(app)
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": len(orchestrator.store) if orchestrator is not None else 0,
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    content = metrics.to_dict()
    orchestrator = _orchestrator(app)
    if orchestrator is not None:
        content.update(orchestrator.metrics())
    return JSONResponse(content=content)


@app.post("/incoming-call")
@app.get("/incoming-call")
async def incoming_call(request: Request) -> Response:
    """Twilio voice webhook."""
    config = get_config()
    params = await _form_params(request)
    twiml = build_incoming_call_twiml(config, caller=params.get("From", ""))

    logger.info("Incoming call", call_sid=params.get("CallSid", ""), media_ws_url=config.media_ws_url)
    return Response(content=twiml, media_type="application/xml")


@app.post("/call-status")
async def call_status(request: Request) -> Response:
    """Twilio status callback; terminal statuses end the session."""
    params = await _form_params(request)
    call_sid = params.get("CallSid", "")
    status = params.get("CallStatus", "").lower()
    metrics.status_callbacks += 1

    logger.info("Call status update", call_sid=call_sid, status=status)

    orchestrator = _orchestrator(app)
    if call_sid and status in TERMINAL_CALL_STATUSES and orchestrator is not None:
        await orchestrator.on_call_ended(call_sid)

    return Response(status_code=204)


@app.websocket("/media")
async def media_websocket(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    Inbound audio only: frames are forwarded to transcription, replies go out
    through call-control updates.
    """
    await websocket.accept()
    metrics.total_connections += 1
    metrics.active_connections += 1

    orchestrator = _orchestrator(websocket.app)
    stream = MediaStreamState()
    stopped = False
    logger.info("Media WebSocket connected")

    try:
        while True:
            try:
                raw = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info("Media WebSocket disconnected", call_sid=stream.call_sid)
                break

            try:
                event_type, event = parse_twilio_message(raw)
            except ValueError:
                metrics.errors += 1
                continue

            if event_type == TwilioEventType.STOP:
                stream.handle_stop()
                stopped = True
                break

            if orchestrator is None:
                continue

            try:
                if event_type == TwilioEventType.START:
                    stream.handle_start(event)
                    if stream.call_sid:
                        await orchestrator.on_call_started(stream.call_sid, event.call_metadata())
                elif event_type == TwilioEventType.MEDIA:
                    if stream.call_sid and stream.handle_media(event):
                        await orchestrator.on_media_frame(stream.call_sid, event.payload)
            except Exception as e:
                logger.error(
                    "Error handling media message",
                    call_sid=stream.call_sid,
                    event_type=event_type.value,
                    error=str(e),
                )
                metrics.errors += 1

    finally:
        metrics.active_connections -= 1
        if orchestrator is not None and stream.call_sid:
            try:
                await orchestrator.on_call_ended(stream.call_sid)
            except Exception as e:
                logger.error("Error ending call", call_sid=stream.call_sid, error=str(e))

        if stopped:
            try:
                await websocket.close()
            except RuntimeError as e:
                logger.debug("Media WebSocket already closed", error=str(e))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
    )
    metrics.errors += 1

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


def main() -> None:
    """Run the server."""
    config = get_config()
    configure_logging(config.log_level)

    logger.info("Starting server", port=config.port)

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
