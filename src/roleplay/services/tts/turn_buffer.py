"""
Turn Buffer for the streaming speech pipeline.

Accumulates the assistant's streaming text deltas and decides when the
accumulated text is a speakable unit that can be sent to speech synthesis.

Architecture:
    LLM deltas → TurnBuffer.consume() → SpeechSynthesizer.synthesize()

Boundary policy (checked against the whole accumulated buffer after every
delta, so at most one unit is released per delta):
    - the buffer holds 20 or more space-delimited tokens, or
    - the buffer ends with sentence-terminal punctuation (., ? or !),
      optionally followed by whitespace.

Usage:
    buffer = TurnBuffer()

    async for delta in deltas:
        for unit in buffer.consume(delta):
            audio = await synthesizer.synthesize(unit, tone)

    final = buffer.flush()
    if final:
        audio = await synthesizer.synthesize(final, tone)
"""

import re
from typing import Iterator, Optional

DEFAULT_MAX_TOKENS = 20
TERMINAL_PUNCTUATION = re.compile(r"[.?!]\s*$")


def token_count(text: str) -> int:
    """Count tokens the way the boundary policy does: split on single spaces."""
    return len(text.split(" "))


def is_speakable(text: str, max_tokens: int = DEFAULT_MAX_TOKENS) -> bool:
    """Return True when ``text`` satisfies the speakable-unit boundary policy."""
    return token_count(text) >= max_tokens or bool(TERMINAL_PUNCTUATION.search(text))


class TurnBuffer:
    """
    Stateful accumulator that turns streaming deltas into speakable units.

    One instance belongs to a single assistant turn. It is discarded when the
    turn finishes; nothing carries over between turns.

    Attributes:
        max_tokens: Token count at which the buffer is released regardless of
            punctuation (default: 20)
    """

    def __init__(self, max_tokens: int = DEFAULT_MAX_TOKENS):
        self.max_tokens = max_tokens
        self._buffer = ""
        self._units_emitted = 0

    def consume(self, delta: str) -> Iterator[str]:
        """
        Append a delta and yield the buffered text if it became speakable.

        Args:
            delta: Text delta from the LLM streaming response

        Yields:
            At most one speakable unit
        """
        if not delta:
            return

        self._buffer += delta
        if not is_speakable(self._buffer, self.max_tokens):
            return

        unit = self._buffer.strip()
        self._buffer = ""
        if unit:
            self._units_emitted += 1
            yield unit

    def flush(self) -> Optional[str]:
        """
        Flush any remaining buffered text once the delta stream has ended.

        Returns:
            Remaining text if any, None otherwise
        """
        remainder = self._buffer.strip()
        self._buffer = ""
        if remainder:
            self._units_emitted += 1
            return remainder
        return None

    @property
    def units_emitted(self) -> int:
        return self._units_emitted

    @property
    def pending_text(self) -> str:
        return self._buffer


__all__ = ["TurnBuffer", "is_speakable", "token_count"]
