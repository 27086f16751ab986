"""
SSE 帧构建与 relay 桥接。从 router 拆出，便于维护与单测。
"""

from __future__ import annotations

import asyncio
import json
from typing import AsyncGenerator, AsyncIterable, AsyncIterator, Iterable

from fastapi.responses import StreamingResponse

from relaygate.core.models import StreamChunk
from relaygate.core.relay import RelayEngine
from relaygate.core.transcoders import Record
from relaygate.util.logger import logger


def sse_frame(record: Record) -> bytes:
    if isinstance(record, str):
        return f"data: {record}\n\n".encode("utf-8")
    return f"data: {json.dumps(record, ensure_ascii=False)}\n\n".encode("utf-8")


def _consume_task_result(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("relay task ended with error: %s", exc)


async def stream_relay_sse(engine: RelayEngine, source: AsyncIterator[StreamChunk]) -> AsyncGenerator[bytes, None]:
    """
    Run the relay in its own task and hand framed records to the response body.

    The frame queue holds one frame, so the relay waits until the previous
    frame has been handed to the server before encoding the next chunk.
    Closing the generator (client gone) cancels the relay.
    """
    frames: asyncio.Queue[bytes] = asyncio.Queue(maxsize=1)

    async def sink(record: Record) -> None:
        await frames.put(sse_frame(record))

    task = asyncio.create_task(engine.run(source, sink), name=f"relay-sse-{engine.session.session_id}")
    get_task: asyncio.Future | None = None
    try:
        while True:
            get_task = asyncio.ensure_future(frames.get())
            done, _ = await asyncio.wait({get_task, task}, return_when=asyncio.FIRST_COMPLETED)
            if get_task in done:
                yield get_task.result()
                continue
            get_task.cancel()
            while not frames.empty():
                yield frames.get_nowait()
            break
        task.result()
    finally:
        if get_task is not None and not get_task.done():
            get_task.cancel()
        if not task.done():
            # 客户端断开：只发出取消，不在 finally 里 await
            logger.info("sse client gone, cancelling relay session_id=%s", engine.session.session_id)
            engine.cancel()
            task.cancel()
            task.add_done_callback(_consume_task_result)


def _build_streaming_response(generator: Iterable[bytes] | AsyncIterable[bytes]) -> StreamingResponse:
    return StreamingResponse(
        generator,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )
