import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Dict, List, Optional

from roleplay.schemas.session import ChatMessage, PersonaConfiguration

if TYPE_CHECKING:
    from roleplay.services.stt_service import TranscriptionBridge

logger = logging.getLogger(__name__)


class SessionPhase(str, Enum):
    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    AWAITING_ASSISTANT = "awaiting_assistant"
    SEALED = "sealed"


@dataclass
class Session:
    """Tracks the conversational state of a single client connection."""

    id: str
    history: List[ChatMessage] = field(default_factory=list)
    phase: SessionPhase = SessionPhase.UNINITIALIZED
    turn_lock: bool = False
    feedback_in_progress: bool = False
    closed: bool = False
    persona: Optional[PersonaConfiguration] = None
    transcription: Optional["TranscriptionBridge"] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def append(self, role: str, content: str) -> ChatMessage:
        """Append a history entry. History is never edited or truncated."""
        message = ChatMessage(role=role, content=content)
        self.history.append(message)
        return message

    @property
    def elapsed_seconds(self) -> float:
        return (datetime.now(timezone.utc) - self.started_at).total_seconds()

    @property
    def is_sealed(self) -> bool:
        return self.phase is SessionPhase.SEALED

    @property
    def last_audio_activity(self) -> Optional[float]:
        """Monotonic time of the last inbound audio chunk, if transcribing."""
        if self.transcription is None:
            return None
        return self.transcription.last_audio_activity


class SessionRegistry:
    """Maps connection identities to their sessions for the process lifetime."""

    def __init__(self):
        self.active_sessions: Dict[str, Session] = {}

    def create(self, connection_id: str) -> Session:
        """Create the session for a new connection."""
        if connection_id in self.active_sessions:
            raise KeyError(f"Session already registered for {connection_id}")
        session = Session(id=connection_id)
        self.active_sessions[connection_id] = session
        logger.info(f"🟢 Client connected: {connection_id}")
        return session

    def get(self, connection_id: str) -> Optional[Session]:
        return self.active_sessions.get(connection_id)

    def remove(self, connection_id: str) -> Optional[Session]:
        """Discard a session. Removing an unknown identity is a no-op."""
        session = self.active_sessions.pop(connection_id, None)
        if session is not None:
            logger.info(
                f"🔴 Client disconnected: {connection_id} "
                f"(session lasted {session.elapsed_seconds:.0f}s)"
            )
        return session

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self.active_sessions

    def __len__(self) -> int:
        return len(self.active_sessions)
