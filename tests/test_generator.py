"""
Tests for reply generation and subscriptions.
"""

import asyncio
import dataclasses
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from openai import RateLimitError

from src.voicedesk.config import get_config
from src.voicedesk.errors import GenerationError
from src.voicedesk.generator import (
    GROQ_BASE_URL,
    OPENAI_BASE_URL,
    OpenAICompatibleGenerator,
    ReplySubscription,
    ReplyUpdate,
    build_messages,
    get_system_prompt,
    validate_model,
)
from src.voicedesk.session import HistoryEntry, Speaker


def _chunk(content):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content))])


async def _stream(*contents):
    for content in contents:
        yield _chunk(content)


def _client(create):
    client = MagicMock()
    client.chat.completions.create = create
    return client


async def _drain(subscription):
    updates = []
    while True:
        update = await subscription.next()
        if update is None:
            return updates
        updates.append(update)


class TestPrompt:
    """Tests for prompt and message assembly."""

    def test_system_prompt_names_persona(self):
        prompt = get_system_prompt(get_config())

        assert "Ava" in prompt
        assert "Acme Support" in prompt

    def test_messages_end_with_utterance(self):
        history = [
            HistoryEntry(Speaker.USER, "hi", 1.0),
            HistoryEntry(Speaker.ASSISTANT, "Hello, how can I help?", 2.0),
        ]

        messages = build_messages("Where is my order?", history, get_config())

        assert messages[0]["role"] == "system"
        assert [m["role"] for m in messages[1:]] == ["user", "assistant", "user"]
        assert messages[-1]["content"] == "Where is my order?"

    def test_current_utterance_not_duplicated(self):
        history = [HistoryEntry(Speaker.USER, "Where is my order?", 1.0)]

        messages = build_messages("Where is my order?", history, get_config())

        assert [m["content"] for m in messages[1:]] == ["Where is my order?"]

    def test_history_trimmed(self):
        config = dataclasses.replace(get_config(), max_history_turns=1)
        history = [HistoryEntry(Speaker.USER, f"message {i}", float(i)) for i in range(6)]

        messages = build_messages("latest", history, config)

        assert [m["content"] for m in messages[1:]] == ["message 4", "message 5", "latest"]


class TestReplySubscription:
    """Tests for the cancellable subscription."""

    @pytest.mark.asyncio
    async def test_yields_updates_then_none(self):
        async def source():
            yield ReplyUpdate("Hello.")
            yield ReplyUpdate("Hello. Bye.", is_final=True)

        updates = await _drain(ReplySubscription(source()))

        assert [u.text for u in updates] == ["Hello.", "Hello. Bye."]
        assert updates[-1].is_final

    @pytest.mark.asyncio
    async def test_cancel_before_next(self):
        async def source():
            yield ReplyUpdate("Hello.")

        subscription = ReplySubscription(source())
        subscription.cancel()

        assert subscription.cancelled
        assert await subscription.next() is None

    @pytest.mark.asyncio
    async def test_cancel_while_waiting(self):
        async def source():
            yield ReplyUpdate("Hello.")
            await asyncio.sleep(10)
            yield ReplyUpdate("never")

        subscription = ReplySubscription(source())
        assert (await subscription.next()).text == "Hello."

        pending = asyncio.create_task(subscription.next())
        await asyncio.sleep(0.01)
        subscription.cancel()

        assert await asyncio.wait_for(pending, timeout=1.0) is None
        assert await subscription.next() is None

    @pytest.mark.asyncio
    async def test_errors_propagate(self):
        async def source():
            raise GenerationError("down")
            yield  # pragma: no cover

        with pytest.raises(GenerationError):
            await ReplySubscription(source()).next()


class TestOpenAICompatibleGenerator:
    """Tests for the streaming generator."""

    def test_provider_selection(self):
        groq = OpenAICompatibleGenerator(get_config(), client=MagicMock())
        assert groq.model == "llama-3.3-70b-versatile"
        assert groq._base_url == GROQ_BASE_URL

        config = dataclasses.replace(get_config(), llm_provider="openai", openai_api_key="sk-test")
        openai = OpenAICompatibleGenerator(config, client=MagicMock())
        assert openai.model == "gpt-4o-mini"
        assert openai._base_url == OPENAI_BASE_URL

    @pytest.mark.asyncio
    async def test_streams_cumulative_text(self):
        create = AsyncMock(return_value=_stream("To reset your password, ", "use the login page.", None))
        generator = OpenAICompatibleGenerator(get_config(), client=_client(create))

        updates = await _drain(generator.stream("How do I reset my password?", []))

        assert [u.text for u in updates] == [
            "To reset your password, ",
            "To reset your password, use the login page.",
            "To reset your password, use the login page.",
        ]
        assert [u.is_final for u in updates] == [False, False, True]
        assert create.await_args.kwargs["stream"] is True

    @pytest.mark.asyncio
    async def test_empty_reply_is_an_error(self):
        create = AsyncMock(return_value=_stream(None))
        generator = OpenAICompatibleGenerator(get_config(), client=_client(create))

        with pytest.raises(GenerationError):
            await _drain(generator.stream("hello there", []))

    @pytest.mark.asyncio
    async def test_rate_limit_mapped(self):
        request = httpx.Request("POST", "https://api.groq.com/openai/v1/chat/completions")
        error = RateLimitError("slow down", response=httpx.Response(429, request=request), body=None)
        generator = OpenAICompatibleGenerator(get_config(), client=_client(AsyncMock(side_effect=error)))

        with pytest.raises(GenerationError) as excinfo:
            await _drain(generator.stream("hello there", []))

        assert excinfo.value.rate_limited

    @pytest.mark.asyncio
    async def test_transport_error_mapped(self):
        error = httpx.ConnectError("refused")
        generator = OpenAICompatibleGenerator(get_config(), client=_client(AsyncMock(side_effect=error)))

        with pytest.raises(GenerationError) as excinfo:
            await _drain(generator.stream("hello there", []))

        assert not excinfo.value.rate_limited


class TestValidateModel:
    """Tests for startup model validation."""

    def _patch_client(self, handler):
        real_client = httpx.AsyncClient
        transport = httpx.MockTransport(handler)
        return patch(
            "src.voicedesk.generator.httpx.AsyncClient",
            side_effect=lambda *args, **kwargs: real_client(transport=transport),
        )

    @pytest.mark.asyncio
    async def test_known_model_passes(self):
        def handler(request):
            assert request.headers["Authorization"] == "Bearer key"
            return httpx.Response(200, json={"data": [{"id": "llama-3.3-70b-versatile"}]})

        with self._patch_client(handler):
            assert await validate_model("key", "llama-3.3-70b-versatile")

    @pytest.mark.asyncio
    async def test_unknown_model_exits(self):
        def handler(request):
            return httpx.Response(200, json={"data": [{"id": "other-model"}]})

        with self._patch_client(handler), pytest.raises(SystemExit):
            await validate_model("key", "llama-3.3-70b-versatile")

    @pytest.mark.asyncio
    async def test_bad_key_exits(self):
        def handler(request):
            return httpx.Response(401, json={"error": "invalid key"})

        with self._patch_client(handler), pytest.raises(SystemExit):
            await validate_model("bad", "llama-3.3-70b-versatile")
