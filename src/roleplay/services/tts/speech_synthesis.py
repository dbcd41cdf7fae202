"""Speech synthesis adapter: one text unit in, one complete audio payload out."""

import logging
from typing import Optional, Protocol

import openai

from roleplay.config import Settings

logger = logging.getLogger(__name__)


class SpeechSynthesisError(Exception):
    """Raised when the speech provider fails to return audio for a unit."""


class SpeechSynthesizer(Protocol):
    async def synthesize(self, text: str, tone: Optional[str] = None) -> bytes:
        """Return the full audio payload for ``text``."""
        ...


class OpenAISpeechSynthesizer:
    """
    Synthesizes speakable units with OpenAI's speech endpoint.

    Stateless per call: each unit is synthesized independently and the whole
    payload is collected before returning. Failures are not retried here.
    """

    def __init__(
        self,
        settings: Settings,
        client: Optional[openai.AsyncOpenAI] = None,
        *,
        response_format: str = "mp3",
        chunk_size: int = 16 * 1024,
    ):
        api_key = (
            settings.openai_api_key.get_secret_value()
            if settings.openai_api_key
            else None
        )
        if client is None and not api_key:
            logger.warning("OPENAI_API_KEY is not set. Speech synthesis will fail.")
        self._client = client or openai.AsyncOpenAI(api_key=api_key or "missing")
        self._model = settings.tts_model
        self._voice = settings.tts_voice
        self._response_format = response_format
        self._chunk_size = chunk_size

    async def synthesize(self, text: str, tone: Optional[str] = None) -> bytes:
        stripped = text.strip()
        if not stripped:
            return b""

        logger.info(f"Synthesizing unit ({len(stripped)} chars): '{stripped[:60]}'")
        request: dict = {
            "model": self._model,
            "voice": self._voice,
            "input": stripped,
            "response_format": self._response_format,
        }
        if tone:
            request["instructions"] = tone

        audio = bytearray()
        try:
            async with self._client.audio.speech.with_streaming_response.create(
                **request
            ) as response:
                async for chunk in response.iter_bytes(self._chunk_size):
                    audio.extend(chunk)
        except openai.APIError as exc:
            raise SpeechSynthesisError(f"OpenAI speech API error: {exc}") from exc

        if not audio:
            raise SpeechSynthesisError("Speech provider returned an empty payload")
        return bytes(audio)

    async def aclose(self) -> None:
        await self._client.close()


__all__ = ["OpenAISpeechSynthesizer", "SpeechSynthesisError", "SpeechSynthesizer"]
