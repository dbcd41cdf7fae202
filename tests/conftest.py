import asyncio
import pathlib
import sys
from typing import Any, Callable, Optional

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from roleplay.config import Settings  # noqa: E402
from roleplay.schemas.session import PersonaConfiguration  # noqa: E402
from roleplay.services.dialogue_engine import DialogueEngine  # noqa: E402
from roleplay.services.session_machine import SessionStateMachine  # noqa: E402
from roleplay.services.stt_service import TranscriptEvent  # noqa: E402
from roleplay.services.voice_session import SessionRegistry  # noqa: E402


class FakeChat:
    """Scripted dialogue capability."""

    def __init__(
        self,
        deltas: Optional[list[str]] = None,
        *,
        feedback: str = "Coach feedback",
        stream_error: Optional[Exception] = None,
        feedback_error: Optional[Exception] = None,
        gate: Optional[asyncio.Event] = None,
    ):
        self.deltas = deltas if deltas is not None else ["Sure! I have about ten minutes."]
        self.feedback_text = feedback
        self.stream_error = stream_error
        self.feedback_error = feedback_error
        self.gate = gate
        self.stream_calls: list[list[Any]] = []
        self.complete_calls: list[list[Any]] = []

    async def stream(self, messages):
        self.stream_calls.append(list(messages))
        if self.gate is not None:
            await self.gate.wait()
        if self.stream_error is not None:
            raise self.stream_error
        for delta in self.deltas:
            yield delta

    async def complete(self, messages):
        self.complete_calls.append(list(messages))
        if self.feedback_error is not None:
            raise self.feedback_error
        return self.feedback_text


class FakeSynthesizer:
    def __init__(self, error: Optional[Exception] = None):
        self.calls: list[tuple[str, Optional[str]]] = []
        self.error = error

    async def synthesize(self, text: str, tone: Optional[str] = None) -> bytes:
        self.calls.append((text, tone))
        if self.error is not None:
            raise self.error
        return f"audio:{text}".encode("utf-8")


class FakeTranscriber:
    """Yields scripted events, then drains the audio stream until it closes."""

    def __init__(
        self,
        events: tuple[TranscriptEvent, ...] = (),
        *,
        error: Optional[Exception] = None,
        no_stream: bool = False,
        hang_up: bool = False,
    ):
        self.events = events
        self.error = error
        self.no_stream = no_stream
        self.hang_up = hang_up
        self.received: list[bytes] = []
        self.finished = asyncio.Event()

    async def start_stream(self, audio):
        if self.error is not None:
            raise self.error
        if self.no_stream:
            return None
        return self._run(audio)

    async def _run(self, audio):
        for event in self.events:
            yield event
        if self.hang_up:
            return
        async for chunk in audio:
            self.received.append(chunk)
        self.finished.set()


class RecordingTransport:
    def __init__(self):
        self.events: list[tuple[str, Any]] = []
        self.closed = False

    async def emit(self, event: str, data: Any = None) -> None:
        self.events.append((event, data))

    async def close(self) -> None:
        self.closed = True

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def payloads(self, event: str) -> list[Any]:
        return [data for name, data in self.events if name == event]


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        keepalive_interval_seconds=0.01,
        keepalive_timeout_seconds=0.05,
        feedback_disconnect_delay_seconds=0.0,
        words_per_second=1000.0,
        auto_submit_transcripts=False,
    )


@pytest.fixture
def b2c_easy_config() -> PersonaConfiguration:
    return PersonaConfiguration.model_validate(
        {
            "industry": "fitness",
            "product": "a home rowing machine",
            "targetBuyer": "b2c",
            "b2c": {
                "customer": "first-time",
                "age": 34,
                "income": "middle",
                "motivation": "health",
                "difficulty": "easy",
            },
        }
    )


@pytest.fixture
def b2b_hard_config() -> PersonaConfiguration:
    return PersonaConfiguration.model_validate(
        {
            "product": "a payroll platform",
            "targetBuyer": "b2b",
            "b2b": {"persona": "CFO", "industry": "logistics", "difficulty": "hard"},
        }
    )


@pytest.fixture
def make_machine(settings: Settings) -> Callable[..., tuple]:
    """Build a state machine wired to fakes; returns (machine, transport, registry)."""

    def _make(
        *,
        chat: Optional[FakeChat] = None,
        synthesizer: Optional[FakeSynthesizer] = None,
        transcriber: Optional[FakeTranscriber] = None,
        registry: Optional[SessionRegistry] = None,
        connection_id: str = "conn-1",
        **overrides: Any,
    ):
        registry = registry if registry is not None else SessionRegistry()
        transport = RecordingTransport()
        machine_settings = settings.model_copy(update=overrides) if overrides else settings
        machine = SessionStateMachine(
            registry.create(connection_id),
            registry=registry,
            engine=DialogueEngine(chat or FakeChat(), synthesizer or FakeSynthesizer()),
            transcriber=transcriber or FakeTranscriber(),
            transport=transport,
            settings=machine_settings,
        )
        return machine, transport, registry

    return _make


@pytest.fixture
def wait_until() -> Callable:
    async def _wait(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.005)

    return _wait


@pytest.fixture
def fake_chat_cls():
    return FakeChat


@pytest.fixture
def fake_synthesizer_cls():
    return FakeSynthesizer


@pytest.fixture
def fake_transcriber_cls():
    return FakeTranscriber
