"""
Session state machine for one roleplay connection.

Phases:
    UNINITIALIZED → ACTIVE → AWAITING_ASSISTANT → ACTIVE → … → SEALED

All handlers run on the connection's event loop and are called one event at a
time by the transport. Generation and feedback run in their own tasks so audio
keeps flowing while the assistant speaks; the turn lock guarantees at most one
assistant generation in flight.

Misuse (duplicate configuration, utterances while a turn is in flight or after
feedback, audio on a sealed session) is dropped and only logged.
"""

import asyncio
import base64
import logging
import math
import re
from typing import Any, Optional, Protocol

from roleplay.config import Settings
from roleplay.schemas.session import PersonaConfiguration
from roleplay.services.dialogue_engine import DialogueEngine
from roleplay.services.persona import (
    FEEDBACK_DIRECTIVE,
    build_opening_line,
    build_system_directive,
    tone_directive,
)
from roleplay.services.stt_service import Transcriber, TranscriptionBridge
from roleplay.services.voice_session import Session, SessionPhase, SessionRegistry

logger = logging.getLogger(__name__)

APOLOGY_REPLY = "⚠️ Sorry, there was an issue generating a response."
FEEDBACK_FAILED_REPLY = "⚠️ Failed to generate feedback."


class SessionTransport(Protocol):
    async def emit(self, event: str, data: Any = None) -> None:
        """Send a named event to the client."""
        ...

    async def close(self) -> None:
        """Close the connection from the server side."""
        ...


def estimate_speech_duration_ms(text: str, words_per_second: float = 2.5) -> int:
    """Estimate how long ``text`` takes to speak (about 150 words per minute)."""
    words = len(re.split(r"\s+", text))
    return math.ceil(words / words_per_second * 1000)


class SessionStateMachine:
    """Sequences one session's events across transcription, dialogue and speech."""

    def __init__(
        self,
        session: Session,
        *,
        registry: SessionRegistry,
        engine: DialogueEngine,
        transcriber: Transcriber,
        transport: SessionTransport,
        settings: Settings,
    ):
        self.session = session
        self._registry = registry
        self._engine = engine
        self._transport = transport
        self._settings = settings

        self.bridge = TranscriptionBridge(
            transcriber,
            on_transcript=self._on_transcript,
            on_warning=self._on_transcription_warning,
            keepalive_interval=settings.keepalive_interval_seconds,
            keepalive_timeout=settings.keepalive_timeout_seconds,
            silence_duration_ms=settings.silence_duration_ms,
            sample_rate=settings.sample_rate,
            session_id=session.id,
        )
        session.transcription = self.bridge

        self._turn_task: Optional[asyncio.Task] = None
        self._cooldown_task: Optional[asyncio.Task] = None
        self._disconnect_task: Optional[asyncio.Task] = None
        self._tone: Optional[str] = None

    # ------------------------------------------------------------------ #
    # Outbound
    # ------------------------------------------------------------------ #
    async def _emit(self, event: str, data: Any = None) -> None:
        if self.session.closed:
            logger.debug(f"Dropping '{event}' for closed session {self.session.id}")
            return
        await self._transport.emit(event, data)

    # ------------------------------------------------------------------ #
    # Configuration
    # ------------------------------------------------------------------ #
    def configure(self, config: PersonaConfiguration) -> bool:
        session = self.session
        if session.closed or session.phase is not SessionPhase.UNINITIALIZED:
            logger.info(f"Ignoring start_session for {session.id} in phase {session.phase.value}")
            return False

        session.persona = config
        session.append("system", build_system_directive(config))
        session.append("user", build_opening_line(config))
        self._tone = tone_directive(config.difficulty)
        session.phase = SessionPhase.ACTIVE
        logger.info(
            f"Session {session.id} configured: channel={config.channel}, "
            f"difficulty={config.difficulty}"
        )
        return True

    # ------------------------------------------------------------------ #
    # Turns
    # ------------------------------------------------------------------ #
    def submit_utterance(self, text: str) -> Optional[asyncio.Task]:
        """Accept a user utterance and start the assistant turn for it.

        Returns the generation task, or None when the utterance was dropped.
        """
        session = self.session
        if session.closed:
            return None
        if session.is_sealed or session.feedback_in_progress:
            logger.info(f"✅ Feedback already given for {session.id}. Ignoring input.")
            return None
        if session.turn_lock:
            logger.info(f"⏳ Still processing previous response for {session.id}.")
            return None
        if session.phase is not SessionPhase.ACTIVE:
            logger.info(f"Ignoring user_message for {session.id} in phase {session.phase.value}")
            return None
        if not text or not text.strip():
            return None

        logger.info(f"💬 User message ({session.id}): {text}")
        session.turn_lock = True
        session.append("user", text)
        session.phase = SessionPhase.AWAITING_ASSISTANT
        self._turn_task = asyncio.create_task(self._run_turn())
        return self._turn_task

    async def _run_turn(self) -> None:
        session = self.session
        self.bridge.pause()
        try:
            await self._emit("pause_transcription")
            reply = await self._engine.stream_turn(
                list(session.history),
                tone=self._tone,
                on_partial=self._emit_partial,
                on_audio=self._emit_audio,
            )
        except Exception as exc:
            logger.error(f"❌ Dialogue error for {session.id}: {exc}", exc_info=True)
            if session.closed or session.is_sealed:
                return
            await self._emit("gpt_reply", APOLOGY_REPLY)
            await self._release_turn()
            return

        if session.closed or session.is_sealed:
            logger.debug(f"Discarding reply for finished session {session.id}")
            return
        session.append("assistant", reply)
        delay_ms = estimate_speech_duration_ms(reply, self._settings.words_per_second)
        logger.debug(f"Resuming transcription for {session.id} in {delay_ms}ms")
        self._cooldown_task = asyncio.create_task(self._cooldown(delay_ms))

    async def _emit_partial(self, text: str) -> None:
        await self._emit("gpt_partial_text", text)

    async def _emit_audio(self, audio: bytes) -> None:
        await self._emit("gpt_audio", base64.b64encode(audio).decode("utf-8"))

    async def _cooldown(self, delay_ms: int) -> None:
        await asyncio.sleep(delay_ms / 1000)
        await self._release_turn()

    async def _release_turn(self) -> None:
        session = self.session
        self.bridge.resume()
        session.turn_lock = False
        if session.phase is SessionPhase.AWAITING_ASSISTANT:
            session.phase = SessionPhase.ACTIVE
        if session.is_sealed or session.feedback_in_progress:
            return
        await self._emit("resume_transcription")

    # ------------------------------------------------------------------ #
    # Feedback
    # ------------------------------------------------------------------ #
    def request_feedback(self) -> Optional[asyncio.Task]:
        """Switch the assistant into coach mode and seal the session.

        Returns the feedback task, or None when the request was a no-op.
        """
        session = self.session
        if session.closed or session.is_sealed or session.feedback_in_progress:
            logger.info(f"Feedback already given or in progress for {session.id}")
            return None
        if session.phase is SessionPhase.UNINITIALIZED:
            logger.info(f"Ignoring feedback request for unconfigured session {session.id}")
            return None

        session.feedback_in_progress = True
        return asyncio.create_task(self._run_feedback())

    async def _run_feedback(self) -> None:
        session = self.session
        turn = self._turn_task
        if turn is not None and not turn.done():
            logger.info(f"Waiting for in-flight reply before feedback for {session.id}")
            await turn
        if self._cooldown_task is not None and not self._cooldown_task.done():
            self._cooldown_task.cancel()

        # A retry after a failed attempt reuses the directive already in history.
        last = session.history[-1] if session.history else None
        if last is None or last.role != "user" or last.content != FEEDBACK_DIRECTIVE:
            session.append("user", FEEDBACK_DIRECTIVE)
        try:
            feedback = await self._engine.feedback(list(session.history))
        except Exception as exc:
            logger.error(f"❌ Feedback generation error for {session.id}: {exc}", exc_info=True)
            session.feedback_in_progress = False
            await self._emit("gpt_reply", FEEDBACK_FAILED_REPLY)
            if session.turn_lock and not session.closed:
                await self._release_turn()
            return

        if session.closed:
            return
        session.append("assistant", feedback)
        session.phase = SessionPhase.SEALED
        session.feedback_in_progress = False
        session.turn_lock = False
        logger.info(f"Feedback delivered for {session.id}; session sealed")
        await self._emit("gpt_reply", feedback)
        self._disconnect_task = asyncio.create_task(self._disconnect_later())

    async def _disconnect_later(self) -> None:
        await asyncio.sleep(self._settings.feedback_disconnect_delay_seconds)
        if not self.session.closed:
            await asyncio.shield(self._transport.close())

    # ------------------------------------------------------------------ #
    # Transcription
    # ------------------------------------------------------------------ #
    def start_transcription(self) -> bool:
        if self.session.closed or self.session.is_sealed:
            logger.info(f"Ignoring start_transcription for {self.session.id}")
            return False
        self.bridge.start()
        if self.session.turn_lock:
            self.bridge.pause()
        return True

    def push_audio(self, chunk: bytes) -> bool:
        if self.session.closed or self.session.is_sealed:
            return False
        return self.bridge.push_audio(chunk)

    async def stop_transcription(self) -> Optional[asyncio.Task]:
        """Close the audio stream, then ask for feedback (ending the roleplay)."""
        if self.session.closed:
            return None
        await self._emit("pause_transcription")
        self.bridge.stop()
        return self.request_feedback()

    async def _on_transcript(self, text: str) -> None:
        if self.session.closed:
            return
        logger.info(f"Transcript ({self.session.id}): {text}")
        await self._emit("transcription", text)
        if self._settings.auto_submit_transcripts:
            self.submit_utterance(text)

    async def _on_transcription_warning(self, message: str) -> None:
        await self._emit("transcription", message)

    # ------------------------------------------------------------------ #
    # Teardown
    # ------------------------------------------------------------------ #
    async def teardown(self) -> None:
        """Release the session after the transport disconnected.

        In-flight generation is left to finish; whatever it produces is dropped.
        """
        session = self.session
        if session.closed:
            return
        session.closed = True
        self._registry.remove(session.id)

        for task in (self._cooldown_task, self._disconnect_task):
            if task is not None and not task.done():
                task.cancel()
        try:
            await self.bridge.aclose()
        except Exception as exc:
            logger.warning(f"Error stopping transcription for {session.id}: {exc}")


__all__ = [
    "APOLOGY_REPLY",
    "FEEDBACK_FAILED_REPLY",
    "SessionStateMachine",
    "SessionTransport",
    "estimate_speech_duration_ms",
]
