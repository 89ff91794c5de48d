"""Streaming completions from the Anthropic Messages API.

A ``CompletionStream`` wraps one ``messages.stream(...)`` call. Opening it
performs the HTTP request; provider or transport errors there surface as
``StreamOpenFailure``.
Iterating ``fragments()`` yields text deltas as the provider pushes them and
keeps ``usage`` current from ``message_start``/``message_delta`` events, so
partial usage is available even when the stream is abandoned half-way.
Any error while iterating surfaces as ``StreamRuntimeFailure``, as does the
overall deadline, whether it expires while opening or while iterating.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

from anthropic import AsyncAnthropic

from ..errors import StreamOpenFailure, StreamRuntimeFailure

logger = logging.getLogger(__name__)


@dataclass
class TokenUsage:
    """Token counts reported by the provider for one completion."""
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


class CompletionStream:
    """One streaming completion, opened at most once."""

    def __init__(self, client: Any, request: Dict[str, Any], timeout_seconds: float):
        self._client = client
        self._request = request
        self._timeout_seconds = timeout_seconds
        self._manager = None
        self._stream = None
        self._deadline: Optional[float] = None
        self.usage = TokenUsage()

    def _remaining(self) -> float:
        return self._deadline - asyncio.get_running_loop().time()

    async def open(self) -> None:
        """Send the request and wait for the provider to accept it."""
        self._deadline = asyncio.get_running_loop().time() + self._timeout_seconds
        try:
            self._manager = self._client.messages.stream(**self._request)
            self._stream = await asyncio.wait_for(
                self._manager.__aenter__(), timeout=self._remaining()
            )
        except asyncio.TimeoutError as e:
            self._manager = None
            raise StreamRuntimeFailure(
                f"Stream exceeded {self._timeout_seconds:.0f}s deadline while opening"
            ) from e
        except Exception as e:
            self._manager = None
            raise StreamOpenFailure() from e

    async def fragments(self) -> AsyncIterator[str]:
        """Yield text fragments until the provider ends the stream."""
        if self._stream is None:
            raise RuntimeError("Stream is not open")

        events = self._stream.__aiter__()
        while True:
            try:
                remaining = self._remaining()
                if remaining <= 0:
                    raise asyncio.TimeoutError()
                event = await asyncio.wait_for(events.__anext__(), timeout=remaining)
            except StopAsyncIteration:
                return
            except asyncio.TimeoutError as e:
                raise StreamRuntimeFailure(
                    f"Stream exceeded {self._timeout_seconds:.0f}s deadline"
                ) from e
            except Exception as e:
                raise StreamRuntimeFailure() from e

            self._observe(event)
            if getattr(event, "type", None) == "text" and event.text:
                yield event.text

    def _observe(self, event: Any) -> None:
        event_type = getattr(event, "type", None)
        if event_type == "message_start":
            usage = getattr(event.message, "usage", None)
            if usage is not None:
                self.usage.input_tokens = usage.input_tokens or 0
                self.usage.output_tokens = usage.output_tokens or 0
        elif event_type == "message_delta":
            usage = getattr(event, "usage", None)
            if usage is not None:
                # output_tokens is cumulative in message_delta
                if usage.output_tokens is not None:
                    self.usage.output_tokens = usage.output_tokens
                input_tokens = getattr(usage, "input_tokens", None)
                if input_tokens:
                    self.usage.input_tokens = input_tokens

    async def aclose(self) -> None:
        """Abort the underlying HTTP stream. Safe to call more than once."""
        manager, self._manager = self._manager, None
        self._stream = None
        if manager is None:
            return
        try:
            await manager.__aexit__(None, None, None)
        except Exception as e:
            logger.debug("Error closing completion stream: %s", e)


class CompletionProvider:
    """Factory for completion streams against a fixed model and output bound."""

    def __init__(
        self,
        api_key: Optional[str],
        model: str,
        max_tokens: int,
        timeout_seconds: float = 120.0,
        client: Any = None,
    ):
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._owns_client = False

    @property
    def configured(self) -> bool:
        return self._client is not None or bool(self.api_key)

    def _get_client(self) -> Any:
        if self._client is None:
            if not self.api_key:
                raise RuntimeError("api_key is required when client is not provided")
            self._client = AsyncAnthropic(api_key=self.api_key, max_retries=0)
            self._owns_client = True
        return self._client

    def stream(self, system: str, messages: List[Dict[str, str]]) -> CompletionStream:
        """Prepare a stream; nothing is sent until ``open()``."""
        request = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": system,
            "messages": messages,
        }
        return CompletionStream(self._get_client(), request, self.timeout_seconds)

    async def close(self) -> None:
        """Close the SDK client if this provider created it."""
        if not self._owns_client:
            return
        client, self._client = self._client, None
        self._owns_client = False
        await client.close()
