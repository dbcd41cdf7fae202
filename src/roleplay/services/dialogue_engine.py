"""Dialogue engine: streamed roleplay turns and the terminal feedback turn."""

import logging
from typing import Awaitable, Callable, Optional, Sequence

from roleplay.chat_client import ChatCapability, ChatClientError
from roleplay.schemas.session import ChatMessage
from roleplay.services.tts import SpeechSynthesisError, SpeechSynthesizer, TurnBuffer

logger = logging.getLogger(__name__)


class DialogueError(Exception):
    """A turn could not be generated (chat or speech provider failure)."""


class DialogueEngine:
    """Generates assistant turns for a roleplay history.

    Streaming turns are folded delta by delta: every delta grows the full reply
    and the turn buffer, and each speakable unit released by the buffer is
    synthesized before the next delta is read.
    """

    def __init__(self, chat: ChatCapability, synthesizer: SpeechSynthesizer):
        self._chat = chat
        self._synthesizer = synthesizer

    async def stream_turn(
        self,
        history: Sequence[ChatMessage],
        *,
        tone: Optional[str] = None,
        on_partial: Callable[[str], Awaitable[None]],
        on_audio: Callable[[bytes], Awaitable[None]],
    ) -> str:
        """Stream the next assistant turn and return its full text.

        ``on_partial`` receives the reply accumulated so far after every delta;
        ``on_audio`` receives one audio payload per speakable unit, in order.
        Raises DialogueError if the chat stream or a synthesis call fails.
        """
        buffer = TurnBuffer()
        full_reply = ""

        async def _speak(unit: str) -> None:
            audio = await self._synthesizer.synthesize(unit, tone)
            if audio:
                await on_audio(audio)

        try:
            async for delta in self._chat.stream(list(history)):
                if not delta:
                    continue
                logger.debug("Assistant delta: %r", delta)
                full_reply += delta
                for unit in buffer.consume(delta):
                    await _speak(unit)
                await on_partial(full_reply)

            final_unit = buffer.flush()
            if final_unit:
                await _speak(final_unit)
        except (ChatClientError, SpeechSynthesisError) as exc:
            raise DialogueError(str(exc)) from exc

        logger.info(
            "Assistant turn complete: %d chars, %d speakable units",
            len(full_reply),
            buffer.units_emitted,
        )
        return full_reply

    async def feedback(self, history: Sequence[ChatMessage]) -> str:
        """Return the coach's structured feedback in one non-streamed call."""
        try:
            return await self._chat.complete(list(history))
        except ChatClientError as exc:
            raise DialogueError(str(exc)) from exc


__all__ = ["DialogueEngine", "DialogueError"]
