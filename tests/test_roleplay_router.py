from __future__ import annotations

import base64
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from roleplay.routers.roleplay import decode_audio_payload, router
from roleplay.services.dialogue_engine import DialogueEngine
from roleplay.services.stt_service import TranscriptEvent
from roleplay.services.voice_session import SessionRegistry

START_SESSION = {
    "type": "start_session",
    "data": {
        "industry": "software",
        "product": "a CRM add-on",
        "targetBuyer": "b2b",
        "b2b": {"persona": "VP of Sales", "industry": "manufacturing", "difficulty": "medium"},
    },
}


def make_app(settings, chat, synthesizer, transcriber) -> FastAPI:
    app = FastAPI()
    app.include_router(router)
    app.state.settings = settings
    app.state.session_registry = SessionRegistry()
    app.state.dialogue_engine = DialogueEngine(chat, synthesizer)
    app.state.transcriber = transcriber
    return app


@pytest.fixture
def app(settings, fake_chat_cls, fake_synthesizer_cls, fake_transcriber_cls) -> FastAPI:
    return make_app(settings, fake_chat_cls(), fake_synthesizer_cls(), fake_transcriber_cls())


def _receive_until(ws, event_type: str, limit: int = 20) -> list[dict[str, Any]]:
    messages = []
    for _ in range(limit):
        message = ws.receive_json()
        messages.append(message)
        if message["type"] == event_type:
            return messages
    raise AssertionError(f"never received {event_type}")


def test_roleplay_turn_and_feedback(app: FastAPI) -> None:
    client = TestClient(app)
    with client.websocket_connect("/api/roleplay/connect?client_id=rep-1") as ws:
        ws.send_json(START_SESSION)
        ws.send_json({"type": "user_message", "data": "Hi, thanks for your time."})

        messages = _receive_until(ws, "resume_transcription")
        assert [m["type"] for m in messages] == [
            "pause_transcription",
            "gpt_audio",
            "gpt_partial_text",
            "resume_transcription",
        ]
        audio = base64.b64decode(messages[1]["data"])
        assert audio == b"audio:Sure! I have about ten minutes."
        assert messages[2]["data"] == "Sure! I have about ten minutes."

        ws.send_json({"type": "request_feedback"})
        reply = ws.receive_json()
        assert reply == {"type": "gpt_reply", "data": "Coach feedback"}

        with pytest.raises(WebSocketDisconnect) as exc_info:
            ws.receive_json()
        assert exc_info.value.code == 1000

    assert "rep-1" not in app.state.session_registry


def test_invalid_messages_are_dropped(app: FastAPI) -> None:
    client = TestClient(app)
    with client.websocket_connect("/api/roleplay/connect?client_id=rep-2") as ws:
        ws.send_text("not json")
        ws.send_json(["not", "an", "object"])
        ws.send_json({"type": "start_session", "data": {"targetBuyer": "b2b"}})
        ws.send_json({"type": "user_message", "data": "too early"})
        ws.send_json({"type": "audio_chunk", "data": "%%%not-base64%%%"})
        ws.send_json({"type": "dance"})

        ws.send_json(START_SESSION)
        ws.send_json({"type": "user_message", "data": "Now it counts."})
        first = ws.receive_json()
        assert first == {"type": "pause_transcription"}
        _receive_until(ws, "resume_transcription")

    chat = app.state.dialogue_engine._chat
    assert len(chat.stream_calls) == 1
    assert chat.stream_calls[0][-1].content == "Now it counts."


def test_transcripts_are_forwarded(settings, fake_chat_cls, fake_synthesizer_cls,
                                   fake_transcriber_cls) -> None:
    transcriber = fake_transcriber_cls(
        (
            TranscriptEvent("Could you", is_final=False),
            TranscriptEvent("Could you send pricing?", is_final=True),
        )
    )
    app = make_app(settings, fake_chat_cls(), fake_synthesizer_cls(), transcriber)
    client = TestClient(app)

    with client.websocket_connect("/api/roleplay/connect?client_id=rep-3") as ws:
        ws.send_json(START_SESSION)
        ws.send_json({"type": "start_transcription"})
        ws.send_bytes(b"\x00\x01" * 160)

        assert ws.receive_json() == {"type": "transcription", "data": "Could you send pricing?"}

        ws.send_json({"type": "stop_transcription"})
        assert ws.receive_json() == {"type": "pause_transcription"}
        assert ws.receive_json() == {"type": "gpt_reply", "data": "Coach feedback"}


def test_duplicate_client_id_is_rejected(app: FastAPI) -> None:
    app.state.session_registry.create("rep-4")
    client = TestClient(app)

    with client.websocket_connect("/api/roleplay/connect?client_id=rep-4") as ws:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            ws.receive_json()

    assert exc_info.value.code == 1008
    assert len(app.state.session_registry) == 1


def test_connection_rejected_when_not_ready() -> None:
    app = FastAPI()
    app.include_router(router)
    client = TestClient(app)

    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/api/roleplay/connect"):
            pass

    assert exc_info.value.code == 1011


@pytest.mark.parametrize(
    "payload,expected",
    [
        (b"\x01\x02", b"\x01\x02"),
        (base64.b64encode(b"\x03\x04").decode(), b"\x03\x04"),
        ({"audio": base64.b64encode(b"\x05").decode()}, b"\x05"),
        ([6, 7, 8], b"\x06\x07\x08"),
        ("!!!", None),
        ([300], None),
        (12, None),
    ],
)
def test_decode_audio_payload(payload: Any, expected: bytes | None) -> None:
    assert decode_audio_payload(payload) == expected


def test_health_reports_active_sessions(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("DEEPGRAM_API_KEY", "dg-test")

    from roleplay.app import create_app
    from roleplay.config import get_settings

    get_settings.cache_clear()
    try:
        client = TestClient(create_app())
        response = client.get("/health")
    finally:
        get_settings.cache_clear()

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "active_sessions": 0}
