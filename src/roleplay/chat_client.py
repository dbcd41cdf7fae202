"""Streaming chat completions client for the roleplay dialogue."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Iterable, Mapping, Optional, Protocol, Sequence

import httpx
from fastapi import status

from .config import Settings
from .schemas.session import ChatMessage

logger = logging.getLogger(__name__)


class ChatClientError(Exception):
    """Wrap transport or API failures when communicating with the chat API."""

    def __init__(self, status_code: int, detail: Any):
        super().__init__(str(detail))
        self.status_code = status_code
        self.detail = detail


class ChatCapability(Protocol):
    def stream(self, messages: Sequence[ChatMessage]) -> AsyncGenerator[str, None]:
        """Yield text deltas for the next assistant turn."""
        ...

    async def complete(self, messages: Sequence[ChatMessage]) -> str:
        """Return the full text of the next assistant turn."""
        ...


@dataclass
class ServerSentEvent:
    """Represents a parsed Server-Sent Event."""

    data: str
    event: str = "message"
    event_id: Optional[str] = None


class ChatCompletionsClient:
    """Client for an OpenAI-compatible `/chat/completions` endpoint."""

    _client_lock: asyncio.Lock = asyncio.Lock()
    _client_pool: dict[tuple[str, float], httpx.AsyncClient] = {}

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._settings = settings
        self._http_client = http_client

    def _client_key(self) -> tuple[str, float]:
        return (self._base_url, float(self._settings.request_timeout))

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is not None:
            return self._http_client

        key = self._client_key()
        client = self.__class__._client_pool.get(key)
        if client is not None:
            return client

        async with self.__class__._client_lock:
            client = self.__class__._client_pool.get(key)
            if client is None:
                timeout = httpx.Timeout(self._settings.request_timeout, connect=10.0)
                limits = httpx.Limits(
                    max_connections=50,
                    max_keepalive_connections=20,
                )
                client = httpx.AsyncClient(
                    timeout=timeout,
                    limits=limits,
                    http2=True,
                )
                self.__class__._client_pool[key] = client
        return client

    @property
    def _headers(self) -> dict[str, str]:
        api_key = (
            self._settings.openai_api_key.get_secret_value()
            if self._settings.openai_api_key
            else ""
        )
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }

    @property
    def _base_url(self) -> str:
        """Return the API base URL without a trailing slash."""

        return str(self._settings.chat_base_url).rstrip("/")

    def _build_payload(
        self, messages: Sequence[ChatMessage], *, stream: bool
    ) -> dict[str, Any]:
        return {
            "model": self._settings.chat_model,
            "messages": [message.model_dump() for message in messages],
            "temperature": self._settings.chat_temperature,
            "stream": stream,
        }

    async def stream(
        self, messages: Sequence[ChatMessage]
    ) -> AsyncGenerator[str, None]:
        """Stream the next assistant turn as text deltas."""

        payload = self._build_payload(messages, stream=True)
        url = f"{self._base_url}/chat/completions"

        client = await self._get_http_client()
        try:
            async with client.stream(
                "POST",
                url,
                headers=self._headers,
                json=payload,
            ) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    detail = self._extract_error_detail(body)
                    raise ChatClientError(response.status_code, detail)

                async for event in self._iter_events(response):
                    if not event.data or event.data == "[DONE]":
                        continue
                    try:
                        chunk = json.loads(event.data)
                    except json.JSONDecodeError:
                        logger.debug("Skipping non-JSON stream event: %s", event.data[:80])
                        continue
                    if isinstance(chunk, Mapping) and chunk.get("error"):
                        raise ChatClientError(
                            status.HTTP_502_BAD_GATEWAY, chunk["error"]
                        )
                    delta = self._extract_delta(chunk)
                    if delta:
                        yield delta
        except httpx.HTTPError as exc:
            raise ChatClientError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

    async def complete(self, messages: Sequence[ChatMessage]) -> str:
        """Request the next assistant turn in a single, non-streamed call."""

        payload = self._build_payload(messages, stream=False)
        headers = dict(self._headers)
        headers["Accept"] = "application/json"

        client = await self._get_http_client()
        try:
            response = await client.post(
                f"{self._base_url}/chat/completions",
                headers=headers,
                json=payload,
            )
        except httpx.HTTPError as exc:
            raise ChatClientError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

        if response.status_code >= 400:
            detail = self._extract_error_detail(response.content)
            raise ChatClientError(response.status_code, detail)

        try:
            body = response.json()
        except ValueError as exc:
            raise ChatClientError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

        return self._extract_message_text(body)

    @staticmethod
    def _extract_delta(chunk: Any) -> str:
        if not isinstance(chunk, Mapping):
            return ""
        choices = chunk.get("choices")
        if not isinstance(choices, Sequence) or not choices:
            return ""
        choice = choices[0]
        if not isinstance(choice, Mapping):
            return ""
        delta = choice.get("delta")
        if not isinstance(delta, Mapping):
            return ""
        content = delta.get("content")
        return content if isinstance(content, str) else ""

    @staticmethod
    def _extract_message_text(payload: Mapping[str, Any]) -> str:
        choices = payload.get("choices")
        if not isinstance(choices, Sequence) or not choices:
            raise ChatClientError(
                status.HTTP_502_BAD_GATEWAY, "Completion response missing choices"
            )
        message_container = choices[0]
        message = (
            message_container.get("message")
            if isinstance(message_container, Mapping)
            else None
        )
        if not isinstance(message, Mapping):
            raise ChatClientError(
                status.HTTP_502_BAD_GATEWAY, "Completion response missing message"
            )
        content = message.get("content")
        text = content.strip() if isinstance(content, str) else ""
        if not text:
            raise ChatClientError(
                status.HTTP_502_BAD_GATEWAY, "Completion response missing content"
            )
        return text

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            return
        await self.__class__.aclose_shared()

    @classmethod
    async def aclose_shared(cls) -> None:
        async with cls._client_lock:
            clients = list(cls._client_pool.values())
            cls._client_pool.clear()
        for client in clients:
            try:
                await client.aclose()
            except Exception as exc:  # pragma: no cover - best effort cleanup
                logger.warning("Error closing chat HTTP client: %s", exc)

    async def _iter_events(
        self, response: httpx.Response
    ) -> AsyncGenerator[ServerSentEvent, None]:
        buffer: list[str] = []
        async for line in response.aiter_lines():
            if not line:
                if buffer:
                    yield self._parse_event(buffer)
                    buffer.clear()
                continue
            if line.startswith(":"):
                continue
            buffer.append(line)
        if buffer:
            yield self._parse_event(buffer)

    def _parse_event(self, lines: Iterable[str]) -> ServerSentEvent:
        event_name: Optional[str] = None
        event_id: Optional[str] = None
        data_lines: list[str] = []

        for line in lines:
            field, _, value = line.partition(":")
            value = value.lstrip(" ")
            if field == "event":
                event_name = value or None
            elif field == "data":
                data_lines.append(value)
            elif field == "id":
                event_id = value or None

        data = "\n".join(data_lines)
        return ServerSentEvent(
            data=data, event=event_name or "message", event_id=event_id
        )

    @staticmethod
    def _extract_error_detail(raw: bytes) -> Any:
        if not raw:
            return "Chat API returned an empty error response."
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            text = raw.decode("utf-8", errors="ignore")
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return text
        if isinstance(payload, dict):
            return payload.get("error") or payload
        return payload


__all__ = ["ChatCapability", "ChatClientError", "ChatCompletionsClient", "ServerSentEvent"]
