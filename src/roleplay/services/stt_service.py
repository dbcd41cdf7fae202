"""
Transcription bridge: audio in, finalized transcripts out.

The bridge owns one AudioStream per start()/stop() interval, keeps the upstream
channel alive with injected silence while the microphone is idle, and only
surfaces finalized results. The concrete transcriber is Deepgram, driven with
the synchronous SDK pattern on a worker thread.
"""
import asyncio
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Optional, Protocol

from deepgram import DeepgramClient
from deepgram.core.events import EventType

from roleplay.config import Settings

logger = logging.getLogger(__name__)

# Audio settings (must match the browser recorder)
SAMPLE_RATE = 16000
BYTES_PER_SAMPLE = 2

NO_STREAM_WARNING = "⚠️ No transcript stream received."
TRANSCRIPTION_FAILED_WARNING = "⚠️ Transcription failed."


@dataclass(frozen=True)
class TranscriptEvent:
    text: str
    is_final: bool


class TranscriptionError(Exception):
    """Raised when the transcription channel cannot be opened or fails mid-stream."""


class Transcriber(Protocol):
    async def start_stream(
        self, audio: AsyncIterator[bytes]
    ) -> Optional[AsyncIterator[TranscriptEvent]]:
        """Open a transcription channel fed by ``audio``; None if no result stream."""
        ...


def generate_silence_chunk(duration_ms: int = 500, sample_rate: int = SAMPLE_RATE) -> bytes:
    """Return ``duration_ms`` of 16-bit mono PCM silence."""
    samples = int(sample_rate * duration_ms / 1000)
    return bytes(samples * BYTES_PER_SAMPLE)


class AudioStream:
    """Append-only byte stream for a single transcription attempt.

    Writes never block. Iterating yields chunks in write order until the
    stream is closed; it can only be iterated once.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Optional[bytes]] = asyncio.Queue()
        self._closed = False
        self.bytes_written = 0

    @property
    def is_open(self) -> bool:
        return not self._closed

    def write(self, chunk: bytes) -> bool:
        if self._closed or not chunk:
            return False
        self._queue.put_nowait(chunk)
        self.bytes_written += len(chunk)
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._iter_chunks()

    async def _iter_chunks(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                return
            yield chunk


class TranscriptionBridge:
    """Manages the duplex audio/transcript stream for one session."""

    def __init__(
        self,
        transcriber: Transcriber,
        *,
        on_transcript: Callable[[str], Awaitable[None]],
        on_warning: Callable[[str], Awaitable[None]],
        keepalive_interval: float = 5.0,
        keepalive_timeout: float = 10.0,
        silence_duration_ms: int = 500,
        sample_rate: int = SAMPLE_RATE,
        clock: Callable[[], float] = time.monotonic,
        session_id: str = "",
    ):
        self._transcriber = transcriber
        self._on_transcript = on_transcript
        self._on_warning = on_warning
        self._keepalive_interval = keepalive_interval
        self._keepalive_timeout = keepalive_timeout
        self._silence = generate_silence_chunk(silence_duration_ms, sample_rate)
        self._clock = clock
        self._session_id = session_id

        self._stream: Optional[AudioStream] = None
        self._monitor_task: Optional[asyncio.Task] = None
        self._consumer_task: Optional[asyncio.Task] = None
        self._paused = False
        self.last_audio_activity = clock()
        self.silence_injections = 0

    @property
    def is_open(self) -> bool:
        return self._stream is not None and self._stream.is_open

    @property
    def is_paused(self) -> bool:
        return self._paused

    def start(self) -> AudioStream:
        """Open a fresh AudioStream and begin consuming transcripts for it."""
        if self.is_open:
            logger.info(f"Restarting transcription for {self._session_id}")
            self.stop()

        stream = AudioStream()
        self._stream = stream
        self._paused = False
        self.last_audio_activity = self._clock()
        self._monitor_task = asyncio.create_task(self._keep_alive(stream))
        self._consumer_task = asyncio.create_task(self._consume(stream))
        logger.info(f"🎙️ Transcription started for {self._session_id}")
        return stream

    def push_audio(self, chunk: bytes) -> bool:
        """Append an inbound chunk. Never suspends; returns False if dropped."""
        if not chunk or not self.is_open or self._paused:
            return False
        assert self._stream is not None
        self._stream.write(chunk)
        self.last_audio_activity = self._clock()
        return True

    def pause(self) -> None:
        """Drop inbound audio (e.g. while the assistant is speaking)."""
        self._paused = True
        logger.debug(f"Transcription for {self._session_id} PAUSED")

    def resume(self) -> None:
        self._paused = False
        logger.debug(f"Transcription for {self._session_id} RESUMED")

    def stop(self) -> None:
        """Close the current stream and cancel its liveness monitor."""
        if self._stream is not None:
            self._stream.close()
            self._stream = None
            logger.info(f"🛑 Transcription stopped for {self._session_id}")
        if self._monitor_task is not None:
            self._monitor_task.cancel()
            self._monitor_task = None

    async def aclose(self) -> None:
        """Stop and also abandon the transcript consumer."""
        self.stop()
        task, self._consumer_task = self._consumer_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                logger.warning(f"Error closing transcription for {self._session_id}: {exc}")

    async def _keep_alive(self, stream: AudioStream) -> None:
        while stream.is_open:
            await asyncio.sleep(self._keepalive_interval)
            idle_for = self._clock() - self.last_audio_activity
            if stream.is_open and idle_for > self._keepalive_timeout:
                stream.write(self._silence)
                self.silence_injections += 1
                logger.info(
                    f"🤫 Injected silence to keep stream alive for {self._session_id} "
                    f"(idle {idle_for:.1f}s)"
                )

    async def _consume(self, stream: AudioStream) -> None:
        try:
            events = await self._transcriber.start_stream(stream)
            if events is None:
                logger.warning(f"No transcript stream for {self._session_id}")
                await self._on_warning(NO_STREAM_WARNING)
                return

            async for event in events:
                if not event.is_final:
                    continue
                text = event.text.strip()
                if text:
                    await self._on_transcript(text)

            if self._stream is stream and stream.is_open:
                logger.warning(f"Transcript stream ended early for {self._session_id}")
                await self._on_warning(TRANSCRIPTION_FAILED_WARNING)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(f"❌ Transcription error for {self._session_id}: {exc}", exc_info=True)
            await self._on_warning(TRANSCRIPTION_FAILED_WARNING)
        finally:
            if self._stream is stream:
                self.stop()


class DeepgramSession:
    """Manages a single Deepgram connection using the SDK v5 sync pattern."""

    def __init__(
        self,
        api_key: str,
        session_id: str,
        on_event: Callable[[TranscriptEvent], None],
        on_closed: Callable[[Optional[str]], None],
        model: str = "flux-general-en",
        sample_rate: int = SAMPLE_RATE,
        eot_threshold: float = 0.7,
        eot_timeout_ms: int = 5000,
    ):
        self.session_id = session_id
        self.on_event = on_event
        self.on_closed = on_closed
        self.model = model
        self.sample_rate = sample_rate
        self.eot_threshold = eot_threshold
        self.eot_timeout_ms = eot_timeout_ms

        self._client = DeepgramClient(api_key=api_key)
        self._context_manager = None
        self._socket = None
        self._ready = threading.Event()
        self._running = False
        self._listening_thread: Optional[threading.Thread] = None

    def _handle_message(self, result) -> None:
        try:
            # v2 (Flux): transcript is at top level with a turn event
            event = getattr(result, "event", None)
            transcript = getattr(result, "transcript", None)
            if transcript:
                self.on_event(TranscriptEvent(transcript, event == "EndOfTurn"))
                return

            # v1: channel.alternatives with an is_final flag
            channel = getattr(result, "channel", None)
            alternatives = getattr(channel, "alternatives", None) if channel else None
            if alternatives:
                text = alternatives[0].transcript
                if text:
                    self.on_event(TranscriptEvent(text, bool(getattr(result, "is_final", False))))
        except Exception as e:
            logger.error(f"Error processing transcript for {self.session_id}: {e}", exc_info=True)

    def _on_open(self, _) -> None:
        logger.info(f"✅ Deepgram connected for {self.session_id}")
        self._ready.set()

    def _on_close(self, _) -> None:
        logger.info(f"Deepgram disconnected for {self.session_id}")
        self._ready.clear()
        self.on_closed(None)

    def _on_error(self, error) -> None:
        logger.error(f"Deepgram error for {self.session_id}: {error}")
        self.on_closed(str(error))

    def connect(self) -> bool:
        params = {
            "model": self.model,
            "encoding": "linear16",
            "sample_rate": str(self.sample_rate),
            "eot_threshold": str(self.eot_threshold),
            "eot_timeout_ms": str(self.eot_timeout_ms),
        }
        logger.info(f"Connecting to Deepgram for {self.session_id} with {params}")

        try:
            self._context_manager = self._client.listen.v2.connect(**params)
            self._socket = self._context_manager.__enter__()

            self._socket.on(EventType.OPEN, self._on_open)
            self._socket.on(EventType.MESSAGE, self._handle_message)
            self._socket.on(EventType.ERROR, self._on_error)
            self._socket.on(EventType.CLOSE, self._on_close)

            def listen_loop():
                try:
                    self._socket.start_listening()
                except Exception as e:
                    if self._running:
                        logger.error(f"Listen error for {self.session_id}: {e}")
                        self.on_closed(str(e))

            self._running = True
            self._listening_thread = threading.Thread(target=listen_loop, daemon=True)
            self._listening_thread.start()

            if not self._ready.wait(timeout=10.0):
                raise RuntimeError(f"Failed to connect to Deepgram for {self.session_id}")

            logger.info(f"Deepgram session ready for {self.session_id}")
            return True

        except Exception as e:
            logger.error(f"Failed to connect to Deepgram for {self.session_id}: {e}", exc_info=True)
            self.close()
            return False

    def send_audio(self, data: bytes) -> None:
        if self._socket and self._ready.is_set():
            self._socket.send_media(data)

    def close(self) -> None:
        self._running = False
        self._ready.clear()
        if self._context_manager:
            try:
                self._context_manager.__exit__(None, None, None)
            except Exception as e:
                logger.warning(f"Error closing Deepgram for {self.session_id}: {e}")
            self._context_manager = None
            self._socket = None
        logger.info(f"Deepgram session closed for {self.session_id}")


class DeepgramTranscriber:
    """Transcriber backed by Deepgram's live streaming API."""

    _CLOSED = object()

    def __init__(self, settings: Settings):
        api_key = (
            settings.deepgram_api_key.get_secret_value()
            if settings.deepgram_api_key
            else None
        )
        if not api_key:
            logger.warning("DEEPGRAM_API_KEY is not set. Transcription will fail.")
        self.api_key = api_key
        self._settings = settings

    async def start_stream(
        self, audio: AsyncIterator[bytes]
    ) -> Optional[AsyncIterator[TranscriptEvent]]:
        if not self.api_key:
            raise TranscriptionError("DEEPGRAM_API_KEY is not set")

        # The Deepgram listener runs on a worker thread; results are handed
        # back to this loop through call_soon_threadsafe.
        loop = asyncio.get_running_loop()
        results: asyncio.Queue = asyncio.Queue()

        def _post(item) -> None:
            loop.call_soon_threadsafe(results.put_nowait, item)

        def _closed(error: Optional[str]) -> None:
            _post(TranscriptionError(error) if error else self._CLOSED)

        session = DeepgramSession(
            api_key=self.api_key,
            session_id=uuid.uuid4().hex[:8],
            on_event=_post,
            on_closed=_closed,
            model=self._settings.stt_model,
            sample_rate=self._settings.sample_rate,
            eot_threshold=self._settings.stt_eot_threshold,
            eot_timeout_ms=self._settings.stt_eot_timeout_ms,
        )

        success = await loop.run_in_executor(None, session.connect)
        if not success:
            raise TranscriptionError("Could not connect to Deepgram")

        return self._iter_results(audio, session, results)

    async def _iter_results(
        self,
        audio: AsyncIterator[bytes],
        session: DeepgramSession,
        results: asyncio.Queue,
    ) -> AsyncIterator[TranscriptEvent]:
        loop = asyncio.get_running_loop()

        async def _pump() -> None:
            try:
                async for chunk in audio:
                    await loop.run_in_executor(None, session.send_audio, chunk)
            finally:
                # End of audio: closing the connection flushes the last turn.
                await loop.run_in_executor(None, session.close)
                results.put_nowait(self._CLOSED)

        sender = asyncio.create_task(_pump())
        try:
            while True:
                item = await results.get()
                if item is self._CLOSED:
                    return
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            if not sender.done():
                sender.cancel()
                await loop.run_in_executor(None, session.close)


__all__ = [
    "AudioStream",
    "DeepgramTranscriber",
    "NO_STREAM_WARNING",
    "TRANSCRIPTION_FAILED_WARNING",
    "Transcriber",
    "TranscriptEvent",
    "TranscriptionBridge",
    "TranscriptionError",
    "generate_silence_chunk",
]
