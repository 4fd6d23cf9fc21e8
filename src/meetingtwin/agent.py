"""Conversational agent over the live transcript."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Deque, Dict, List, Optional, Protocol, Tuple

from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from .errors import AgentError, ConfigurationError
from .transcript import TranscriptManager

logger = logging.getLogger("meetingtwin")

DEFAULT_SYSTEM_PROMPT = (
    "You are an AI meeting assistant. You will receive real-time transcripts "
    "labeled by source (user or a number representing a caller). Use this "
    "context to answer user questions accurately and concisely."
)
SKIPPED_REPLY = "SKIPPED LLM"
GROQ_BASE_URL = "https://api.groq.com/openai/v1"


class ChatBackend(Protocol):
    async def complete(self, system: str, messages: List[Dict[str, str]]) -> str:
        ...


class GroqBackend:
    """Groq through its OpenAI-compatible endpoint."""

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "llama3-8b-8192",
        max_tokens: int = 1024,
        base_url: str = GROQ_BASE_URL,
    ) -> None:
        if not api_key:
            raise ConfigurationError("GROQ_API_KEY must be set")
        self.model = model
        self.max_tokens = max_tokens
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url)

    async def complete(self, system: str, messages: List[Dict[str, str]]) -> str:
        response = await self.client.chat.completions.create(
            model=self.model,
            max_tokens=self.max_tokens,
            messages=[{"role": "system", "content": system}, *messages],
        )
        if not response.choices:
            return ""
        return response.choices[0].message.content or ""


class AnthropicBackend:
    def __init__(
        self,
        api_key: Optional[str],
        model: str = "claude-sonnet-4-5",
        max_tokens: int = 1024,
    ) -> None:
        if not api_key:
            raise ConfigurationError("ANTHROPIC_API_KEY must be set")
        self.model = model
        self.max_tokens = max_tokens
        self.client = AsyncAnthropic(api_key=api_key)

    async def complete(self, system: str, messages: List[Dict[str, str]]) -> str:
        response = await self.client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            system=system,
            messages=messages,
        )
        return "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )


class ChatHistory:
    def __init__(self) -> None:
        self._messages: List[Dict[str, str]] = []

    def get_history(self) -> List[Dict[str, str]]:
        return list(self._messages)

    def add_message(self, role: str, content: str) -> None:
        self._messages.append({"role": role, "content": content})


class ConversationalAgent:
    """Answers questions one at a time, in the order they were asked.

    Each question and answer is also written to the transcript so later
    questions see the conversation with the assistant as context.
    """

    def __init__(
        self,
        transcript: TranscriptManager,
        backend: Optional[ChatBackend] = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        skip_llm: bool = False,
        queue_delay: float = 1.0,
    ) -> None:
        if backend is None and not skip_llm:
            raise ConfigurationError("A chat backend is required unless skip_llm is set.")
        self.transcript = transcript
        self.backend = backend
        self.system_prompt = system_prompt
        self.skip_llm = skip_llm
        self.queue_delay = queue_delay
        self.history = ChatHistory()
        self._queue: Deque[Tuple[str, asyncio.Future]] = deque()
        self._worker: Optional[asyncio.Task] = None

    @property
    def pending(self) -> int:
        return len(self._queue)

    async def query(self, text: str) -> str:
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._queue.append((text, future))
        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._drain())
        return await future

    def build_system_prompt(self) -> str:
        return (
            f"{self.system_prompt}\n\n=== MEETING TRANSCRIPT ===\n"
            f"{self.transcript.get_transcript()}\n=== END TRANSCRIPT ==="
        )

    async def _drain(self) -> None:
        while self._queue:
            text, future = self._queue.popleft()
            try:
                reply = await self._ask(text)
            except AgentError as exc:
                if not future.done():
                    future.set_exception(exc)
            else:
                if not future.done():
                    future.set_result(reply)
            if self._queue:
                await asyncio.sleep(self.queue_delay)

    async def _ask(self, text: str) -> str:
        system = self.build_system_prompt()
        messages = [*self.history.get_history(), {"role": "user", "content": text}]
        self.transcript.add_entry(time.time(), "user", text)
        if self.skip_llm:
            return SKIPPED_REPLY

        try:
            reply = await self.backend.complete(system, messages)
        except Exception as exc:
            status = getattr(exc, "status_code", None)
            if status == 429:
                logger.warning("Rate limited by the language model API.")
            logger.exception("Language model request failed")
            raise AgentError(f"Agent query failed: {exc}", status_code=status) from exc

        self.history.add_message("user", text)
        self.history.add_message("assistant", reply)
        self.transcript.add_entry(time.time(), "assistant", reply)
        return reply


def build_backend(provider: str, api_key: Optional[str], model: Optional[str], max_tokens: int):
    provider = (provider or "groq").lower()
    if provider == "groq":
        return GroqBackend(api_key, model=model or "llama3-8b-8192", max_tokens=max_tokens)
    if provider in ("anthropic", "claude"):
        return AnthropicBackend(api_key, model=model or "claude-sonnet-4-5", max_tokens=max_tokens)
    raise ConfigurationError(f"Unknown LLM provider: {provider}")
