"""Streaming transcription with Deepgram."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosedOK, WebSocketException

from .errors import ConfigurationError, TranscriptionError
from .events import SessionListener
from .models import TranscriptEvent

logger = logging.getLogger("meetingtwin")

DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"
KEEPALIVE_MESSAGE = json.dumps({"type": "KeepAlive"})


def build_listen_url(
    sample_rate: int,
    language: str = "en",
    model: str = "nova-2",
    base_url: str = DEEPGRAM_LISTEN_URL,
) -> str:
    params = {
        "model": model,
        "language": language,
        "smart_format": "true",
        "encoding": "linear16",
        "channels": 1,
        "sample_rate": int(sample_rate),
        "interim_results": "true",
        "utterance_end_ms": 1000,
        "vad_events": "true",
        "diarize": "true",
    }
    return f"{base_url}?{urlencode(params)}"


def parse_results(
    message: Dict[str, Any],
    timestamp: Optional[float] = None,
    source: Optional[str] = None,
) -> List[TranscriptEvent]:
    """Turn a final ``Results`` message into one event per speaker phrase.

    Consecutive words from the same speaker are joined; interim results and
    empty transcripts produce nothing.
    """
    if message.get("type") != "Results" or not message.get("is_final"):
        return []
    alternatives = (message.get("channel") or {}).get("alternatives") or []
    if not alternatives:
        return []
    best = alternatives[0]
    transcript = (best.get("transcript") or "").strip()
    if not transcript:
        return []
    confidence = best.get("confidence")
    ts = time.time() if timestamp is None else timestamp

    words = best.get("words") or []
    if not words:
        return [
            TranscriptEvent(text=transcript, timestamp=ts, confidence=confidence, source=source)
        ]

    phrases: List[Dict[str, Any]] = []
    for word in words:
        speaker = word.get("speaker")
        token = word.get("punctuated_word") or word.get("word") or ""
        if phrases and phrases[-1]["speaker"] == speaker:
            phrases[-1]["words"].append(token)
        else:
            phrases.append({"speaker": speaker, "words": [token]})

    return [
        TranscriptEvent(
            text=" ".join(phrase["words"]),
            timestamp=ts,
            confidence=confidence,
            speaker=phrase["speaker"],
            source=source,
        )
        for phrase in phrases
    ]


class DeepgramSession:
    """One live-listen websocket, reopened on every ``connect`` call.

    ``connect`` returns immediately; listeners learn about the outcome through
    ``on_connected`` or ``on_error`` followed by ``on_disconnected``. A local
    ``disconnect`` is silent.
    """

    def __init__(
        self,
        api_key: Optional[str],
        language: str = "en",
        model: str = "nova-2",
        keepalive_seconds: float = 10.0,
        base_url: str = DEEPGRAM_LISTEN_URL,
    ) -> None:
        if not api_key:
            raise ConfigurationError("Deepgram API key is required")
        self.api_key = api_key
        self.language = language
        self.model = model
        self.keepalive_seconds = keepalive_seconds
        self.base_url = base_url
        self.source: Optional[str] = None
        self.connected = False
        self._task: Optional[asyncio.Task] = None
        self._outbox: Optional[asyncio.Queue] = None
        self._listeners: List[SessionListener] = []

    def subscribe(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    def connect(self, sample_rate: int = 16000, source: Optional[str] = None) -> None:
        if self._task is not None and not self._task.done():
            logger.debug("[%s] Deepgram connection already in progress.", source)
            return
        self.source = source
        url = build_listen_url(
            sample_rate, language=self.language, model=self.model, base_url=self.base_url
        )
        logger.info("Connecting to Deepgram with language: %s", self.language)
        self._task = asyncio.get_running_loop().create_task(self._run(url))

    def send_audio(self, frame: bytes) -> None:
        if not self.connected or self._outbox is None:
            return
        self._outbox.put_nowait(frame)

    def disconnect(self) -> None:
        task, self._task = self._task, None
        self.connected = False
        self._outbox = None
        if task is not None and not task.done():
            task.cancel()

    async def _run(self, url: str) -> None:
        headers = {"Authorization": f"Token {self.api_key}"}
        current = asyncio.current_task()
        error: Optional[Exception] = None
        try:
            async with connect(url, additional_headers=headers) as ws:
                self._outbox = asyncio.Queue()
                self.connected = True
                logger.info("Deepgram connection opened.")
                self._emit_connected()
                helpers = [
                    asyncio.create_task(self._keepalive(ws)),
                    asyncio.create_task(self._pump(ws, self._outbox)),
                ]
                try:
                    async for raw in ws:
                        self._handle_message(raw)
                finally:
                    for helper in helpers:
                        helper.cancel()
                    await asyncio.gather(*helpers, return_exceptions=True)
        except asyncio.CancelledError:
            raise
        except ConnectionClosedOK:
            pass
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            error = TranscriptionError(f"Deepgram connection failed: {exc}")
        except Exception as exc:
            logger.exception("Deepgram session failed")
            error = TranscriptionError(f"Deepgram session failed: {exc}")

        # A superseded run (disconnect, then connect again) must stay silent.
        if self._task is not current:
            return
        self._task = None
        self.connected = False
        self._outbox = None
        logger.info("Deepgram connection closed.")
        if error is not None:
            logger.error("Deepgram error: %s", error)
            self._emit_error(error)
        self._emit_disconnected()

    async def _keepalive(self, ws) -> None:
        while True:
            await asyncio.sleep(self.keepalive_seconds)
            await ws.send(KEEPALIVE_MESSAGE)

    async def _pump(self, ws, outbox: asyncio.Queue) -> None:
        while True:
            frame = await outbox.get()
            await ws.send(frame)

    def _handle_message(self, raw) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug("Ignoring non-JSON Deepgram message.")
            return
        if not isinstance(message, dict):
            logger.debug("Ignoring non-object Deepgram message.")
            return
        kind = message.get("type")
        if kind == "Results":
            for event in parse_results(message, source=self.source):
                self._emit_transcript(event)
        elif kind == "Error":
            reason = message.get("description") or message.get("message") or "unknown error"
            self._emit_error(TranscriptionError(reason))
        else:
            logger.debug("Deepgram %s message.", kind)

    def _emit_connected(self) -> None:
        for listener in list(self._listeners):
            listener.on_connected()

    def _emit_disconnected(self) -> None:
        for listener in list(self._listeners):
            listener.on_disconnected()

    def _emit_transcript(self, event: TranscriptEvent) -> None:
        for listener in list(self._listeners):
            listener.on_transcript(event)

    def _emit_error(self, error: Exception) -> None:
        for listener in list(self._listeners):
            listener.on_error(error)
