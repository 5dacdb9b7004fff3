from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass

import structlog

from .errors import RequestTimeoutError, TierChatError
from .metrics import stream_outcomes_total


def sse_encode(data: str, *, event: str | None = None) -> bytes:
    prefix = f"event: {event}\n" if event else ""
    return f"{prefix}data: {data}\n\n".encode("utf-8")


@dataclass(frozen=True)
class StreamEncoder:
    media_type: str
    piece: Callable[[str], bytes]
    done: bytes | None = None
    error: Callable[[str], bytes] | None = None


TEXT_ENCODER = StreamEncoder(
    media_type="text/plain; charset=utf-8",
    piece=lambda text: text.encode("utf-8"),
)

SSE_ENCODER = StreamEncoder(
    media_type="text/event-stream",
    piece=lambda text: sse_encode(json.dumps({"text": text})),
    done=sse_encode("[DONE]"),
    error=lambda message: sse_encode(json.dumps({"error": message}), event="error"),
)


def encoder_for(fmt: str) -> StreamEncoder:
    return SSE_ENCODER if fmt == "sse" else TEXT_ENCODER


async def _aclose(it: AsyncIterator[str]) -> None:
    aclose = getattr(it, "aclose", None)
    if callable(aclose):
        await aclose()


class StreamingBridge:
    """
    Relays increments to the HTTP body while keeping the full text.

    States: pending -> streaming -> completed | failed | cancelled. Only a
    completed stream with non-empty text reaches `on_complete`, and only via
    `finalize()`, which the HTTP layer runs once the body is closed.
    """

    def __init__(
        self,
        increments: AsyncIterator[str],
        *,
        on_complete: Callable[[str], Awaitable[None]] | None = None,
        encoder: StreamEncoder = TEXT_ENCODER,
        idle_timeout_seconds: float = 0.0,
        total_timeout_seconds: float = 0.0,
    ):
        self._increments = increments
        self._on_complete = on_complete
        self.encoder = encoder
        self._idle_timeout = max(0.0, float(idle_timeout_seconds or 0))
        self._total_timeout = max(0.0, float(total_timeout_seconds or 0))
        self._parts: list[str] = []
        self.state = "pending"
        # The body is sent after the request middleware has unbound its context.
        self._log = structlog.get_logger().bind(**structlog.contextvars.get_contextvars())

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def _next_timeout(self, loop: asyncio.AbstractEventLoop, started: float) -> float | None:
        remaining_total: float | None = None
        if self._total_timeout > 0:
            remaining_total = self._total_timeout - (loop.time() - started)
            if remaining_total <= 0:
                raise RequestTimeoutError("Streaming request timed out.")

        timeout: float | None = self._idle_timeout or None
        if remaining_total is not None:
            timeout = remaining_total if timeout is None else min(timeout, remaining_total)
        return timeout

    async def relay(self) -> AsyncIterator[bytes]:
        it = self._increments
        self.state = "streaming"
        try:
            try:
                loop = asyncio.get_running_loop()
                started = loop.time()
                while True:
                    timeout = self._next_timeout(loop, started)
                    try:
                        piece = await asyncio.wait_for(it.__anext__(), timeout=timeout)
                    except StopAsyncIteration:
                        break
                    except asyncio.TimeoutError as e:
                        raise RequestTimeoutError("Streaming request timed out.") from e
                    if not piece:
                        continue
                    self._parts.append(piece)
                    yield self.encoder.piece(piece)
            except TierChatError as e:
                self.state = "failed"
                stream_outcomes_total.labels(outcome="failed").inc()
                self._log.warning("stream_failed", forwarded_chars=sum(map(len, self._parts)), error=str(e))
                if self.encoder.error is not None:
                    yield self.encoder.error(str(e))
                return

            if self.encoder.done is not None:
                yield self.encoder.done
            self.state = "completed"
            stream_outcomes_total.labels(outcome="completed").inc()
        except (GeneratorExit, asyncio.CancelledError):
            self.state = "cancelled"
            stream_outcomes_total.labels(outcome="cancelled").inc()
            self._log.info("stream_cancelled", forwarded_chars=sum(map(len, self._parts)))
            raise
        finally:
            await _aclose(it)

    async def finalize(self) -> None:
        if self.state != "completed":
            self._log.info("stream_not_persisted", state=self.state)
            return
        text = self.text
        if not text:
            self._log.info("stream_empty_not_persisted")
            return
        if self._on_complete is None:
            return
        try:
            await self._on_complete(text)
        except Exception:
            self._log.exception("stream_persist_failed", chars=len(text))
            raise
