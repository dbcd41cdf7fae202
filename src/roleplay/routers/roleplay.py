import base64
import binascii
import json
import logging
import uuid
from typing import Any, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from roleplay.config import Settings
from roleplay.schemas.session import PersonaConfiguration
from roleplay.services.dialogue_engine import DialogueEngine
from roleplay.services.session_machine import SessionStateMachine
from roleplay.services.stt_service import Transcriber
from roleplay.services.voice_session import SessionRegistry

router = APIRouter(prefix="/api/roleplay", tags=["Roleplay"])
logger = logging.getLogger(__name__)


class WebSocketTransport:
    """Sends named events to one client as ``{"type": ..., "data": ...}`` JSON."""

    def __init__(self, websocket: WebSocket, client_id: str):
        self._websocket = websocket
        self._client_id = client_id
        self._closed = False

    async def emit(self, event: str, data: Any = None) -> None:
        if self._closed:
            return
        message: dict[str, Any] = {"type": event}
        if data is not None:
            message["data"] = data
        try:
            await self._websocket.send_json(message)
        except Exception as e:
            logger.error(f"Error sending '{event}' to {self._client_id}: {e}")
            self._closed = True

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        logger.info(f"Closing connection for {self._client_id}")
        try:
            await self._websocket.close(code=1000)
        except Exception as e:
            logger.warning(f"Error closing websocket for {self._client_id}: {e}")


def decode_audio_payload(payload: Any) -> Optional[bytes]:
    """Accept raw bytes, base64 text, ``{"audio": ...}`` or a list of byte values."""
    if isinstance(payload, dict):
        payload = payload.get("audio")
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    if isinstance(payload, str):
        try:
            return base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError):
            logger.warning("Dropping audio_chunk with invalid base64 payload")
            return None
    if isinstance(payload, list):
        try:
            return bytes(payload)
        except (TypeError, ValueError):
            logger.warning("Dropping audio_chunk with invalid byte list")
            return None
    return None


async def dispatch_event(machine: SessionStateMachine, data: Any) -> None:
    """Route one decoded inbound event to the session state machine."""
    if not isinstance(data, dict):
        logger.debug("Ignoring non-object message")
        return

    event_type = data.get("type")
    payload = data.get("data")

    if event_type == "start_session":
        try:
            config = PersonaConfiguration.model_validate(payload or {})
        except ValidationError as e:
            logger.warning(f"Invalid start_session payload for {machine.session.id}: {e}")
            return
        machine.configure(config)

    elif event_type == "user_message":
        if isinstance(payload, str):
            machine.submit_utterance(payload)
        else:
            logger.debug(f"Ignoring user_message without text for {machine.session.id}")

    elif event_type == "start_transcription":
        machine.start_transcription()

    elif event_type == "audio_chunk":
        chunk = decode_audio_payload(payload)
        if chunk:
            machine.push_audio(chunk)

    elif event_type == "stop_transcription":
        await machine.stop_transcription()

    elif event_type == "request_feedback":
        machine.request_feedback()

    else:
        logger.debug(f"Ignoring unknown event '{event_type}' for {machine.session.id}")


async def handle_connection(
    websocket: WebSocket,
    client_id: str,
    registry: SessionRegistry,
    engine: DialogueEngine,
    transcriber: Transcriber,
    settings: Settings,
):
    """
    Main loop for a single client's roleplay connection.

    Inbound events are handled strictly one at a time. Binary frames are
    treated as audio chunks; text frames carry JSON events.
    """
    await websocket.accept()

    if client_id in registry:
        logger.warning(f"Rejecting duplicate connection for {client_id}")
        await websocket.close(code=1008, reason="Session already active")
        return

    session = registry.create(client_id)
    machine = SessionStateMachine(
        session,
        registry=registry,
        engine=engine,
        transcriber=transcriber,
        transport=WebSocketTransport(websocket, client_id),
        settings=settings,
    )

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))

            audio = message.get("bytes")
            if audio is not None:
                machine.push_audio(audio)
                continue

            text = message.get("text")
            if not text:
                continue
            try:
                data = json.loads(text)
            except json.JSONDecodeError:
                logger.warning(f"Dropping malformed message from {client_id}")
                continue
            await dispatch_event(machine, data)

    except WebSocketDisconnect:
        logger.info(f"Client {client_id} disconnected")
    except Exception as e:
        logger.error(f"Unexpected error for {client_id}: {e}", exc_info=True)
    finally:
        await machine.teardown()


@router.websocket("/connect")
async def roleplay_connect(websocket: WebSocket):
    client_id = websocket.query_params.get("client_id") or uuid.uuid4().hex

    app_state = websocket.app.state
    if not hasattr(app_state, "session_registry"):
        logger.error("Session registry not initialized")
        await websocket.close(code=1011, reason="Server not ready")
        return

    await handle_connection(
        websocket,
        client_id,
        app_state.session_registry,
        app_state.dialogue_engine,
        app_state.transcriber,
        app_state.settings,
    )
