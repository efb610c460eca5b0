"""Adapters over the OpenAI-compatible completion and transcription APIs.

The SDK client is blocking, so every call runs in a worker thread and is
bounded by an explicit timeout. Failures are translated into ModelFailure /
TranscriptionFailure; no retries happen here.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

from openai import OpenAI, OpenAIError
from openai.types.chat import ChatCompletionMessageParam

from tutor_bot.errors import ModelFailure, TranscriptionFailure
from tutor_bot.models import ROLE_MODEL, Message

DEFAULT_MAX_OUTPUT_TOKENS = 500
DEFAULT_TEMPERATURE = 0.7
DEFAULT_TIMEOUT = 60.0

_AUDIO_EXTENSIONS = {
    "mp3": "mp3",
    "mpeg": "mp3",
    "wav": "wav",
    "flac": "flac",
    "m4a": "m4a",
    "mp4": "m4a",
}

logger = logging.getLogger(__name__)


def _zero_usage() -> Dict[str, int]:
    return {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}


def extract_usage(resp: Any) -> Dict[str, int]:
    """
    Best-effort extraction of usage fields from OpenAI SDK response.
    Returns dict with: prompt_tokens, completion_tokens, total_tokens (all ints >= 0).
    """
    usage = getattr(resp, "usage", None)
    if usage is None:
        return _zero_usage()
    return {
        "prompt_tokens": max(0, int(getattr(usage, "prompt_tokens", 0) or 0)),
        "completion_tokens": max(0, int(getattr(usage, "completion_tokens", 0) or 0)),
        "total_tokens": max(0, int(getattr(usage, "total_tokens", 0) or 0)),
    }


@dataclass
class Completion:
    text: str
    usage: Dict[str, int] = field(default_factory=_zero_usage)


def build_messages(history: Sequence[Message], system_prompt: str) -> List[ChatCompletionMessageParam]:
    messages: List[ChatCompletionMessageParam] = [{"role": "system", "content": system_prompt}]
    for msg in history:
        role = "assistant" if msg.role == ROLE_MODEL else "user"
        messages.append({"role": role, "content": msg.text})
    return messages


class ModelGateway:
    """complete(history, system_prompt) -> Completion, one candidate per call."""

    def __init__(
        self,
        client: OpenAI,
        model: str,
        max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
        temperature: float = DEFAULT_TEMPERATURE,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self._client = client
        self.model = model
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.timeout = timeout

    def _complete_sync(self, messages: List[ChatCompletionMessageParam]) -> Any:
        return self._client.chat.completions.create(
            model=self.model,
            messages=messages,
            n=1,
            max_tokens=self.max_output_tokens,
            temperature=self.temperature,
        )

    async def complete(self, history: Sequence[Message], system_prompt: str) -> Completion:
        messages = build_messages(history, system_prompt)
        try:
            resp = await asyncio.wait_for(
                asyncio.to_thread(self._complete_sync, messages),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise ModelFailure(f"Completion timed out after {self.timeout}s") from e
        except OpenAIError as e:
            raise ModelFailure(f"Completion request failed: {type(e).__name__}: {e}") from e

        try:
            content = resp.choices[0].message.content or ""
        except (AttributeError, IndexError, TypeError) as e:
            raise ModelFailure(f"Malformed completion response: {e}") from e
        if not content.strip():
            raise ModelFailure("Completion returned no text")
        return Completion(text=content, usage=extract_usage(resp))


def _audio_filename(mime_type: str) -> str:
    mime = (mime_type or "").lower()
    for key, ext in _AUDIO_EXTENSIONS.items():
        if key in mime:
            return f"voice.{ext}"
    # Telegram voice notes are OGG/Opus
    return "voice.ogg"


class TranscriptionGateway:
    """transcribe(audio, mime_type) -> text via the audio transcription endpoint."""

    def __init__(
        self,
        client: OpenAI,
        model: str = "whisper-1",
        language: str = "ru",
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self._client = client
        self.model = model
        self.language = language
        self.timeout = timeout

    def _transcribe_sync(self, audio: bytes, mime_type: str) -> Any:
        kwargs: Dict[str, Any] = {}
        if self.language:
            kwargs["language"] = self.language
        return self._client.audio.transcriptions.create(
            model=self.model,
            file=(_audio_filename(mime_type), audio, mime_type or "audio/ogg"),
            **kwargs,
        )

    async def transcribe(self, audio: bytes, mime_type: str) -> str:
        if not audio:
            raise TranscriptionFailure("Empty audio payload")
        logger.info("Transcribing %d bytes of %s", len(audio), mime_type or "unknown")
        try:
            resp = await asyncio.wait_for(
                asyncio.to_thread(self._transcribe_sync, audio, mime_type),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise TranscriptionFailure(f"Transcription timed out after {self.timeout}s") from e
        except OpenAIError as e:
            raise TranscriptionFailure(f"Transcription request failed: {type(e).__name__}: {e}") from e

        text = str(getattr(resp, "text", "") or "").strip()
        if not text:
            raise TranscriptionFailure("No transcription result returned")
        return text
