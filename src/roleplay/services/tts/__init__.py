"""
Speech output package.

This package contains modules for turning streamed assistant text into audio:

- turn_buffer: Decides when streamed text is a speakable unit
- speech_synthesis: Converts one speakable unit into one audio payload

Architecture Overview:

    ┌─────────────┐     ┌────────────┐     ┌───────────────────┐     ┌───────────┐
    │ LLM Stream  │────▶│ TurnBuffer │────▶│ SpeechSynthesizer │────▶│ gpt_audio │
    └─────────────┘     └────────────┘     └───────────────────┘     └───────────┘

Units are synthesized one at a time, in the order the buffer released them.
"""

from .speech_synthesis import OpenAISpeechSynthesizer, SpeechSynthesisError, SpeechSynthesizer
from .turn_buffer import TurnBuffer, is_speakable

__all__ = [
    "OpenAISpeechSynthesizer",
    "SpeechSynthesisError",
    "SpeechSynthesizer",
    "TurnBuffer",
    "is_speakable",
]
