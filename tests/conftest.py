"""
Pytest configuration and fixtures.
"""

import dataclasses
import os
from typing import List
from unittest.mock import patch

import pytest

from fakes import FakeTranscriptionStream


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "TWILIO_ACCOUNT_SID": "ACtest123456789",
        "TWILIO_AUTH_TOKEN": "test_auth_token",
        "DEEPGRAM_API_KEY": "test_deepgram_key",
        "GROQ_API_KEY": "test_groq_key",
        "GROQ_MODEL": "llama-3.3-70b-versatile",
        "COMPANY_NAME": "Acme Support",
    }

    with patch.dict(os.environ, env_vars):
        from src.voicedesk.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


@pytest.fixture
def config():
    """Config with timings shrunk so async tests run fast."""
    from src.voicedesk.config import get_config

    return dataclasses.replace(
        get_config(),
        ack_timeout_ms=300,
        chunk_spacing_ms=0,
        generator_timeout_seconds=0.5,
        retry_backoff_base_ms=10,
        retry_backoff_max_ms=20,
        rate_limit_backoff_ms=10,
        soft_pause_timeout_ms=100,
        loop_tick_ms=10,
        generation_cooldown_ms=0,
        interrupt_grace_ms=0,
    )


@pytest.fixture
def transcription_factory():
    created: List[FakeTranscriptionStream] = []

    def factory(on_segment, on_error):
        stream = FakeTranscriptionStream(on_segment, on_error)
        created.append(stream)
        return stream

    factory.created = created
    return factory


@pytest.fixture
def twilio_start_message():
    """Sample Twilio start message."""
    import json
    return json.dumps({
        "event": "start",
        "streamSid": "MZ123456",
        "start": {
            "callSid": "CA789012",
            "accountSid": "AC345678",
            "tracks": ["inbound"],
            "customParameters": {"From": "+15550001111"},
        }
    })


@pytest.fixture
def twilio_media_message():
    """Sample Twilio media message."""
    import json
    import base64

    return json.dumps({
        "event": "media",
        "streamSid": "MZ123456",
        "media": {
            "track": "inbound",
            "chunk": 1,
            "timestamp": "12345",
            "payload": base64.b64encode(b"\xff" * 160).decode(),
        }
    })


@pytest.fixture
def twilio_stop_message():
    """Sample Twilio stop message."""
    import json
    return json.dumps({
        "event": "stop",
        "streamSid": "MZ123456",
        "stop": {"callSid": "CA789012", "accountSid": "AC345678"},
    })
