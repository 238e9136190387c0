"""
Reply generation over an OpenAI-compatible streaming chat API.

Provides:
- A cancellable subscription over growing partial replies
- Groq (default) or OpenAI as the backing provider
- Startup model validation
- Support-agent system prompt built from the call's history
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence

import httpx
import structlog
from openai import APIError, AsyncOpenAI, RateLimitError

from src.voicedesk.config import Config, get_config
from src.voicedesk.errors import GenerationError
from src.voicedesk.session import HistoryEntry, Speaker

logger = structlog.get_logger(__name__)

GROQ_BASE_URL = "https://api.groq.com/openai/v1"
OPENAI_BASE_URL = "https://api.openai.com/v1"


@dataclass(frozen=True)
class ReplyUpdate:
    """Cumulative reply text so far; `is_final` marks the complete reply."""
    text: str
    is_final: bool = False


class ReplySubscription:
    """
    Pull-based handle over one generator call.

    `next()` returns the next update, or None once the stream is exhausted or
    cancelled. `cancel()` is safe to call at any time, from any coroutine, and
    makes every later `next()` return None.
    """

    def __init__(self, source: AsyncIterator[ReplyUpdate]):
        self._source = source
        self._pending: Optional[asyncio.Future] = None
        self._closer: Optional[asyncio.Task] = None
        self._cancelled = False
        self._exhausted = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def next(self) -> Optional[ReplyUpdate]:
        if self._cancelled or self._exhausted:
            return None

        self._pending = asyncio.ensure_future(self._source.__anext__())
        try:
            return await self._pending
        except StopAsyncIteration:
            self._exhausted = True
            return None
        except asyncio.CancelledError:
            if self._cancelled:
                return None
            raise
        finally:
            self._pending = None

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True

        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
            return

        aclose = getattr(self._source, "aclose", None)
        if aclose is None or self._exhausted:
            return
        try:
            self._closer = asyncio.get_running_loop().create_task(self._close(aclose))
        except RuntimeError:
            pass

    @staticmethod
    async def _close(aclose: Any) -> None:
        try:
            await aclose()
        except Exception as e:
            logger.debug("Reply stream close failed", error=str(e))


class ReplyGenerator(Protocol):
    def stream(self, utterance: str, history: Sequence[HistoryEntry]) -> ReplySubscription:
        ...


def get_system_prompt(config: Optional[Config] = None) -> str:
    """
    Get the system prompt for the support agent.

    This defines the agent's persona and behavior guidelines.
    """
    if config is None:
        config = get_config()

    return f"""You are {config.agent_name}, a customer support assistant for {config.company_name} on a live phone call.

CORE BEHAVIORS:
- Answer directly and immediately - the caller is listening, not reading
- Use at most 2-3 short sentences, never more than 50 words
- Only include essential information
- If you don't have a specific answer, say so and offer what you do know

PHONE CALL GUIDELINES:
- Speak naturally, in complete sentences
- No lists, markdown, URLs spelled out, or emoji
- Use contractions (I'm, you're, we'll) for natural speech
- Be patient with interruptions - they're normal in phone calls

OFF-TOPIC QUESTIONS:
- Acknowledge briefly and steer back to {config.company_name} products and the caller's account

RESPONSE STYLE:
- Start responses directly - no "Sure!" or "Of course!"
- Keep technical terms simple"""


def build_messages(
    utterance: str,
    history: Sequence[HistoryEntry],
    config: Config,
) -> List[Dict[str, str]]:
    """Chat messages for one generation: system prompt, recent history, utterance."""
    messages = [{"role": "system", "content": get_system_prompt(config)}]

    recent = list(history)[-(config.max_history_turns * 2):] if config.max_history_turns > 0 else []
    # The current utterance is already the last user entry when the coordinator records it first.
    if recent and recent[-1].speaker == Speaker.USER and recent[-1].text == utterance:
        recent = recent[:-1]

    for entry in recent:
        role = "assistant" if entry.speaker == Speaker.ASSISTANT else "user"
        messages.append({"role": role, "content": entry.text})

    messages.append({"role": "user", "content": utterance})
    return messages


async def validate_model(api_key: str, model_name: str, base_url: str = GROQ_BASE_URL) -> bool:
    """
    Validate that the configured model exists.

    Calls GET {base_url}/models to check.

    Raises:
        SystemExit: If model doesn't exist (fail fast)
    """
    logger.info("Validating LLM model", model=model_name, base_url=base_url)

    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(
                f"{base_url}/models",
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=10.0,
            )

            if response.status_code != 200:
                logger.error(
                    "Failed to fetch models",
                    status_code=response.status_code,
                    response=response.text[:200],
                )
                raise SystemExit(
                    f"Failed to validate LLM model. API returned status {response.status_code}. "
                    "Check your API key."
                )

            data = response.json()
            model_ids = [m.get("id") for m in data.get("data", [])]

            if model_name not in model_ids:
                available = ", ".join(sorted(i for i in model_ids if i)[:10])
                logger.error(
                    "LLM model not found",
                    requested_model=model_name,
                    available_models=available,
                )
                raise SystemExit(
                    f"Model '{model_name}' not found in available models.\n"
                    f"Available models include: {available}"
                )

            logger.info("LLM model validated successfully", model=model_name)
            return True

        except httpx.RequestError as e:
            logger.error("Failed to connect to LLM API", error=str(e))
            raise SystemExit(
                f"Failed to connect to LLM API: {e}\n"
                "Check your network connection and API key."
            )


class OpenAICompatibleGenerator:
    """
    Streaming reply generator for Groq or OpenAI.

    Uses the OpenAI client; Groq is reached through its compatible base URL.
    """

    def __init__(self, config: Optional[Config] = None, client: Optional[AsyncOpenAI] = None):
        if config is None:
            config = get_config()

        self.config = config
        if config.llm_provider == "openai":
            self.model = config.openai_model
            self._api_key = config.openai_api_key
            self._base_url = OPENAI_BASE_URL
        else:
            self.model = config.groq_model
            self._api_key = config.groq_api_key
            self._base_url = GROQ_BASE_URL

        self._client = client or AsyncOpenAI(api_key=self._api_key, base_url=self._base_url)

    async def validate_model(self) -> bool:
        """Validate the configured model exists."""
        return await validate_model(self._api_key, self.model, self._base_url)

    def stream(self, utterance: str, history: Sequence[HistoryEntry]) -> ReplySubscription:
        messages = build_messages(utterance, history, self.config)
        return ReplySubscription(self._updates(messages))

    async def _updates(self, messages: List[Dict[str, str]]) -> AsyncIterator[ReplyUpdate]:
        try:
            stream = await self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                stream=True,
                max_tokens=self.config.llm_max_tokens,
                temperature=self.config.llm_temperature,
            )

            full_response = ""
            async for chunk in stream:
                if chunk.choices and chunk.choices[0].delta.content:
                    full_response += chunk.choices[0].delta.content
                    yield ReplyUpdate(text=full_response)

        except RateLimitError as e:
            raise GenerationError(f"LLM rate limited: {e}", rate_limited=True) from e
        except (APIError, httpx.HTTPError) as e:
            raise GenerationError(f"LLM request failed: {e}") from e

        if not full_response.strip():
            raise GenerationError("LLM returned an empty reply")

        yield ReplyUpdate(text=full_response, is_final=True)


def create_generator(config: Optional[Config] = None) -> OpenAICompatibleGenerator:
    return OpenAICompatibleGenerator(config)
