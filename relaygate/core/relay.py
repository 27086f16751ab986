"""
Streaming relay state machine.

A producer task drains the provider iterator into a bounded channel; the relay
loop pulls one chunk at a time, shapes it through the transcoder and awaits the
write sink before pulling again, so a slow client pauses the upstream read.

    IDLE -> AWAITING_UPSTREAM -> STREAMING -> DRAINING -> COMPLETED
                 \\__________________\\______________________-> FAILED
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Iterable

from relaygate.config.settings import settings
from relaygate.core.context import RelaySession
from relaygate.core.errors import (
    RelayGateError,
    RelayProtocolError,
    UpstreamStreamInterruptedError,
    UpstreamUnavailableError,
)
from relaygate.core.models import StreamChunk
from relaygate.core.transcoders import Record, Transcoder
from relaygate.observability.logging import log_event
from relaygate.util.logger import logger


WriteSink = Callable[[Record], Awaitable[None]]


class RelayState(str, Enum):
    IDLE = "idle"
    AWAITING_UPSTREAM = "awaiting_upstream"
    STREAMING = "streaming"
    DRAINING = "draining"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({RelayState.COMPLETED, RelayState.FAILED})


@dataclass(slots=True)
class RelayOutcome:
    state: RelayState
    chunk_count: int
    text: str
    error: RelayGateError | None = None
    cancelled: bool = False


class _EndOfStream:
    pass


@dataclass(slots=True)
class _UpstreamFailure:
    error: BaseException


_END = _EndOfStream()
_CANCELLED = object()
_TIMED_OUT = object()


def _as_relay_error(exc: BaseException) -> RelayGateError:
    if isinstance(exc, RelayGateError):
        return exc
    detail = (str(exc) or "").strip() or exc.__class__.__name__
    return UpstreamStreamInterruptedError(f"upstream stream failed: {detail}")


async def _close_source(source: AsyncIterator[StreamChunk]) -> None:
    aclose = getattr(source, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception as exc:  # pragma: no cover - best effort
        logger.debug("relay source close failed: %s", exc)


class RelayEngine:
    """Drives one relay session from upstream open to exactly one terminal record."""

    def __init__(
        self,
        session: RelaySession,
        transcoder: Transcoder,
        *,
        channel_size: int | None = None,
        first_byte_timeout: float | None = None,
    ) -> None:
        self.session = session
        self.transcoder = transcoder
        self.channel_size = max(1, int(channel_size or settings.relay_channel_size))
        if first_byte_timeout is None:
            first_byte_timeout = settings.upstream_first_byte_timeout_seconds
        self.first_byte_timeout = first_byte_timeout if first_byte_timeout and first_byte_timeout > 0 else None
        self._state = RelayState.IDLE
        self._cancel_event = asyncio.Event()
        self._terminal_emitted = False
        self._chunk_count = 0
        self._parts: list[str] = []

    @property
    def state(self) -> RelayState:
        return self._state

    @property
    def terminal_emitted(self) -> bool:
        return self._terminal_emitted

    def cancel(self) -> None:
        self.session.cancel()
        self._cancel_event.set()

    def _cancel_requested(self) -> bool:
        return self._cancel_event.is_set() or self.session.cancelled

    def _transition(self, new_state: RelayState) -> None:
        if self._state in TERMINAL_STATES:
            raise RelayProtocolError(f"relay already terminal: {self._state.value} -> {new_state.value}")
        logger.debug(
            "relay transition session_id=%s %s -> %s",
            self.session.session_id,
            self._state.value,
            new_state.value,
        )
        self._state = new_state

    async def _emit(self, sink: WriteSink, records: Iterable[Record]) -> None:
        for record in records:
            if self._terminal_emitted:
                raise RelayProtocolError(f"record after terminal record session_id={self.session.session_id}")
            await sink(record)

    async def _emit_terminal(self, sink: WriteSink, records: Iterable[Record]) -> None:
        await self._emit(sink, records)
        self._terminal_emitted = True

    async def _pump(self, source: AsyncIterator[StreamChunk], channel: asyncio.Queue) -> None:
        try:
            async for chunk in source:
                await channel.put(chunk)
                if chunk.is_final:
                    break
            await channel.put(_END)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await channel.put(_UpstreamFailure(exc))
        finally:
            await _close_source(source)

    async def _next_item(self, channel: asyncio.Queue, timeout: float | None) -> object:
        if self._cancel_requested():
            return _CANCELLED
        get_task = asyncio.ensure_future(channel.get())
        cancel_task = asyncio.ensure_future(self._cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {get_task, cancel_task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (get_task, cancel_task):
                if not task.done():
                    task.cancel()
        if cancel_task in done or self._cancel_requested():
            return _CANCELLED
        if get_task in done:
            return get_task.result()
        return _TIMED_OUT

    def _outcome(self, error: RelayGateError | None = None) -> RelayOutcome:
        return RelayOutcome(
            state=self._state,
            chunk_count=self._chunk_count,
            text="".join(self._parts),
            error=error,
            cancelled=self.session.cancelled,
        )

    async def _fail(self, sink: WriteSink, error: RelayGateError) -> RelayOutcome:
        self._transition(RelayState.FAILED)
        logger.warning(
            "relay failed session_id=%s model=%s chunks=%d error=%s",
            self.session.session_id,
            self.session.resolved_model_id,
            self._chunk_count,
            error,
        )
        try:
            await self._emit_terminal(sink, self.transcoder.fail(error))
        except RelayProtocolError:
            raise
        except Exception as exc:
            logger.info("relay error record not delivered session_id=%s error=%s", self.session.session_id, exc)
        return self._outcome(error)

    def _drain(self) -> RelayOutcome:
        if self._state not in TERMINAL_STATES:
            self._transition(RelayState.DRAINING)
            self._transition(RelayState.COMPLETED)
        logger.info(
            "relay cancelled session_id=%s chunks=%d",
            self.session.session_id,
            self._chunk_count,
        )
        return self._outcome()

    async def run(self, source: AsyncIterator[StreamChunk], sink: WriteSink) -> RelayOutcome:
        if self._state is not RelayState.IDLE:
            raise RelayProtocolError(f"relay already started session_id={self.session.session_id}")
        log_event(
            "relay_session_started",
            session_id=self.session.session_id,
            transport=self.session.transport.value,
            alias=self.session.original_model_alias,
            model=self.session.resolved_model_id,
        )
        self._transition(RelayState.AWAITING_UPSTREAM)
        channel: asyncio.Queue = asyncio.Queue(maxsize=self.channel_size)
        producer = asyncio.create_task(self._pump(source, channel), name=f"relay-pump-{self.session.session_id}")
        try:
            outcome = await self._relay_loop(channel, sink)
        except asyncio.CancelledError:
            self.session.cancel()
            if self._state not in TERMINAL_STATES:
                self._state = RelayState.COMPLETED
            raise
        finally:
            if not producer.done():
                producer.cancel()
        log_event(
            "relay_session_finished",
            session_id=self.session.session_id,
            state=outcome.state.value,
            chunks=outcome.chunk_count,
            cancelled=outcome.cancelled,
        )
        return outcome

    async def _relay_loop(self, channel: asyncio.Queue, sink: WriteSink) -> RelayOutcome:
        while True:
            timeout = self.first_byte_timeout if self._state is RelayState.AWAITING_UPSTREAM else None
            item = await self._next_item(channel, timeout)

            if item is _CANCELLED:
                return self._drain()
            if item is _TIMED_OUT:
                return await self._fail(
                    sink,
                    UpstreamUnavailableError(0, f"no response within {self.first_byte_timeout:g}s"),
                )
            if isinstance(item, _UpstreamFailure):
                return await self._fail(sink, _as_relay_error(item.error))
            if isinstance(item, _EndOfStream):
                # 上游没有给出结束标记就断开了
                return await self._fail(sink, UpstreamStreamInterruptedError())

            chunk: StreamChunk = item  # type: ignore[assignment]
            self.session.touch()
            try:
                if self._state is RelayState.AWAITING_UPSTREAM:
                    self._transition(RelayState.STREAMING)
                    await self._emit(sink, self.transcoder.start())
                if chunk.text:
                    self._chunk_count += 1
                    self._parts.append(chunk.text)
                    await self._emit(sink, self.transcoder.encode(chunk))
                if chunk.is_final:
                    await self._emit_terminal(sink, self.transcoder.finish())
                    self._transition(RelayState.COMPLETED)
                    logger.info(
                        "relay completed session_id=%s model=%s chunks=%d chars=%d",
                        self.session.session_id,
                        self.session.resolved_model_id,
                        self._chunk_count,
                        sum(len(part) for part in self._parts),
                    )
                    return self._outcome()
            except RelayProtocolError:
                raise
            except Exception as exc:
                # 写下游失败：客户端已断开，按取消处理
                logger.info("relay sink write failed session_id=%s error=%s", self.session.session_id, exc)
                self.session.cancel()
                return self._drain()


async def _prepend(first: StreamChunk, rest: AsyncIterator[StreamChunk]) -> AsyncIterator[StreamChunk]:
    try:
        yield first
        if first.is_final:
            return
        async for chunk in rest:
            yield chunk
    finally:
        await _close_source(rest)


async def _exhausted() -> AsyncIterator[StreamChunk]:
    return
    yield  # pragma: no cover


async def open_upstream(
    source: AsyncIterator[StreamChunk],
    first_byte_timeout: float | None = None,
) -> AsyncIterator[StreamChunk]:
    """
    Pull the first chunk before the caller commits response headers.

    Failures to open the provider stream surface here as UpstreamUnavailableError
    so HTTP transports can still answer with a status code.
    """
    iterator = source.__aiter__()
    try:
        if first_byte_timeout and first_byte_timeout > 0:
            first = await asyncio.wait_for(iterator.__anext__(), timeout=first_byte_timeout)
        else:
            first = await iterator.__anext__()
    except StopAsyncIteration:
        return _exhausted()
    except asyncio.TimeoutError as exc:
        await _close_source(iterator)
        raise UpstreamUnavailableError(0, f"no response within {first_byte_timeout:g}s") from exc
    return _prepend(first, iterator)
