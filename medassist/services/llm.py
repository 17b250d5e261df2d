"""Streamed chat completions against an OpenAI-compatible endpoint."""

from __future__ import annotations

import asyncio
import json
from typing import AsyncIterator

import httpx

from medassist.core.config import Settings
from medassist.core.errors import CompletionError
from medassist.core.logging import get_logger

logger = get_logger(__name__)

_DONE = "[DONE]"


class ChatCompletionClient:
    """Thin httpx wrapper around POST /chat/completions with stream=true."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        model: str = "gpt-4o-mini",
        max_tokens: int = 1024,
        temperature: float = 0.2,
        timeout: float = 60.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key.strip():
            raise ValueError("Missing LLM API key.")
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._client = http_client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Accept": "text/event-stream",
            },
            timeout=timeout,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "ChatCompletionClient":
        return cls(
            base_url=settings.llm_base_url,
            api_key=settings.llm_api_key,
            model=settings.llm_model,
            max_tokens=settings.llm_max_tokens,
            temperature=settings.llm_temperature,
            timeout=settings.llm_timeout,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def stream(
        self,
        messages: list[dict[str, str]],
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[str]:
        """Yield content deltas as they arrive.

        The cancel event is raced against every read, so setting it aborts
        a stalled stream without waiting for the next chunk or the timeout.
        An event that is already set never reaches the endpoint.

        Raises:
            CompletionError: Non-2xx response, transport failure, malformed
                stream, or the cancel event was set (aborted=True).
        """
        _check_cancel(cancel)
        payload = {
            "model": self.model,
            "messages": messages,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "stream": True,
        }
        try:
            async with self._client.stream("POST", "/chat/completions", json=payload) as response:
                if response.status_code >= 300:
                    body = (await response.aread()).decode("utf-8", "replace")
                    logger.error(
                        "LLM HTTP error %s: %s",
                        response.status_code,
                        body[:200] if body else "no body",
                    )
                    raise CompletionError(
                        f"LLM request failed with status {response.status_code}.",
                        status_code=response.status_code,
                    )

                lines = response.aiter_lines()
                try:
                    while True:
                        line = await _next_line(lines, cancel)
                        if line is None:
                            break
                        data = _data_field(line)
                        if data is None:
                            continue
                        if data == _DONE:
                            break
                        token = _delta_content(data)
                        if token:
                            yield token
                finally:
                    await lines.aclose()
                _check_cancel(cancel)
        except httpx.TimeoutException as exc:
            logger.error("LLM request timed out: %s", exc)
            raise CompletionError(f"LLM request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            logger.error("LLM request failed: %s", exc)
            raise CompletionError(f"LLM request failed: {exc}") from exc


def _check_cancel(cancel: asyncio.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise CompletionError("Completion aborted.", aborted=True)


async def _read_line(lines: AsyncIterator[str]) -> str | None:
    try:
        return await lines.__anext__()
    except StopAsyncIteration:
        return None


async def _next_line(lines: AsyncIterator[str], cancel: asyncio.Event | None) -> str | None:
    """Return the next line, None at end of stream, or abort once cancel is set."""
    if cancel is None:
        return await _read_line(lines)
    _check_cancel(cancel)

    reader = asyncio.ensure_future(_read_line(lines))
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({reader, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not reader.done():
            reader.cancel()
            await asyncio.wait({reader})

    if reader.cancelled():
        raise CompletionError("Completion aborted.", aborted=True)
    return reader.result()


def _data_field(line: str) -> str | None:
    """Return the payload of an SSE data line, or None for anything else."""
    if not line.startswith("data:"):
        return None
    return line[len("data:"):].strip()


def _delta_content(data: str) -> str:
    try:
        payload = json.loads(data)
    except ValueError as exc:
        raise CompletionError(f"Malformed stream chunk from LLM: {data[:200]}") from exc

    choices = payload.get("choices") if isinstance(payload, dict) else None
    if not isinstance(choices, list) or not choices:
        return ""
    first = choices[0] if isinstance(choices[0], dict) else {}
    delta = first.get("delta") if isinstance(first, dict) else {}
    content = delta.get("content") if isinstance(delta, dict) else ""
    return content or ""
