"""Abstract model collaborator and its retry wrapper.

A provider turns a ModelRequest into a stream of incremental chunks.
The HTTP/streaming transport behind it lives outside the engine; the
engine only consumes the chunk sequence through the accumulator.
"""
from __future__ import annotations

import abc
import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any, Union

from ..errors import TransportError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelRequest:
    system_prompt: str
    messages: list[dict[str, Any]]
    tools: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallStart:
    id: str
    name: str


@dataclass(frozen=True)
class ToolArgsDelta:
    id: str
    fragment: str


@dataclass(frozen=True)
class ToolCallEnd:
    id: str


@dataclass(frozen=True)
class StreamEnd:
    usage: dict[str, Any] = field(default_factory=dict)


ModelChunk = Union[TextDelta, ToolCallStart, ToolArgsDelta, ToolCallEnd, StreamEnd]


class ModelProvider(abc.ABC):
    """Abstract model interface."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short provider name for logs."""

    @abc.abstractmethod
    def stream(self, request: ModelRequest) -> AsyncIterator[ModelChunk]:
        """Yield chunks for one assistant turn, ending with StreamEnd."""


def _compact_exception(exc: BaseException) -> str:
    text = f"{type(exc).__name__}: {exc}"
    return text if len(text) <= 240 else text[:237] + "..."


class RetryingProvider(ModelProvider):
    """Retries failures that happen before the first chunk arrives.

    Backoff is exponential from ``base_delay`` capped at ``max_delay``.
    Once output has been streamed a retry would duplicate it, so a
    later failure surfaces as TransportError immediately.
    """

    def __init__(
        self,
        inner: ModelProvider,
        *,
        max_attempts: int = 5,
        base_delay: float = 0.75,
        max_delay: float = 5.0,
        is_retriable: Callable[[BaseException], bool] | None = None,
    ) -> None:
        self._inner = inner
        self._max_attempts = max(1, max_attempts)
        self._base_delay = max(0.0, base_delay)
        self._max_delay = max(self._base_delay, max_delay)
        self._is_retriable = is_retriable or (lambda exc: True)

    @property
    def name(self) -> str:
        return self._inner.name

    async def stream(self, request: ModelRequest) -> AsyncIterator[ModelChunk]:
        attempt = 0
        while True:
            attempt += 1
            started = False
            try:
                async for chunk in self._inner.stream(request):
                    started = True
                    yield chunk
                return
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if started:
                    raise TransportError(
                        f"Model stream from {self.name} failed mid-response: "
                        f"{_compact_exception(exc)}",
                        attempts=attempt,
                    ) from exc
                retriable = self._is_retriable(exc)
                if retriable and attempt < self._max_attempts:
                    delay = min(
                        self._max_delay, self._base_delay * (2 ** (attempt - 1)),
                    )
                    logger.warning(
                        "Model %s transient transport failure on attempt %d/%d; "
                        "retrying in %.2fs: %s",
                        self.name,
                        attempt,
                        self._max_attempts,
                        delay,
                        _compact_exception(exc),
                    )
                    await asyncio.sleep(delay)
                    continue
                logger.error(
                    "Model %s request failed after %d attempt(s): %s",
                    self.name, attempt, _compact_exception(exc),
                )
                raise TransportError(
                    f"Model transport failure persisted after {attempt} "
                    f"attempt(s): {_compact_exception(exc)}. Please retry the request.",
                    attempts=attempt,
                ) from exc
