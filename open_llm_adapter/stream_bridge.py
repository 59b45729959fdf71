from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
import weakref
from collections.abc import AsyncIterable, AsyncIterator, Callable
from typing import Any, BinaryIO, Protocol

from open_llm_adapter.backends.base import BackendStream
from open_llm_adapter.errors import SerializationError, StreamTransportError
from open_llm_adapter.schemas import ChatCompletionStreamResponse
from open_llm_adapter.translation.messages import MessageTranslator

logger = logging.getLogger("uvicorn.error")

DONE_FRAME = b"data: [DONE]\n\n"
DEFAULT_QUEUE_SIZE = 10

_END = object()


class _Channel:
    """Bounded hand-off between one producer task and one consumer."""

    def __init__(self, capacity: int) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=max(1, capacity))
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, item: Any) -> None:
        await self._queue.put(item)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # A full queue means the consumer still has items to drain; it sees
        # the closed flag once the queue is empty.
        with contextlib.suppress(asyncio.QueueFull):
            self._queue.put_nowait(_END)

    async def receive(self) -> Any:
        if self._closed and self._queue.empty():
            return _END
        return await self._queue.get()


class ChunkStream:
    """Consumer side of a bridged stream: ``async for chunk in stream``."""

    def __init__(
        self,
        channel: _Channel,
        *,
        completion_id: str,
        created: int,
        model: str,
        on_finish: Callable[[ChunkStream, BaseException | None], None] | None = None,
    ) -> None:
        self.id = completion_id
        self.created = created
        self.model = model
        self.worker_error: BaseException | None = None
        self.completed = False
        self._channel = channel
        self._task: asyncio.Task[None] | None = None
        self._finished = False
        self._on_finish = on_finish

    def __aiter__(self) -> ChunkStream:
        return self

    async def __anext__(self) -> ChatCompletionStreamResponse:
        if self._finished:
            raise StopAsyncIteration
        item = await self._channel.receive()
        if item is _END:
            self.completed = True
            self._finish(None)
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            self._finish(item)
            raise item
        return item

    async def __aenter__(self) -> ChunkStream:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        self._finish(None)
        task = self._task
        if task is None or task.done():
            return
        # A closed channel means the worker is already releasing the backend.
        if not self._channel.closed:
            task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def _finish(self, error: BaseException | None) -> None:
        if self._finished:
            return
        self._finished = True
        if self._on_finish is not None:
            self._on_finish(self, error)


class StreamBridge:
    def __init__(
        self,
        translator: MessageTranslator,
        *,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        self._translator = translator
        self._queue_size = queue_size

    def bridge(
        self,
        backend_stream: BackendStream,
        *,
        completion_id: str,
        model: str,
        created: int | None = None,
        on_finish: Callable[[ChunkStream, BaseException | None], None] | None = None,
    ) -> ChunkStream:
        channel = _Channel(self._queue_size)
        stream = ChunkStream(
            channel,
            completion_id=completion_id,
            created=created if created is not None else int(time.time()),
            model=model,
            on_finish=on_finish,
        )
        stream._task = asyncio.create_task(
            self._pump(backend_stream, channel, weakref.ref(stream)),
            name=f"stream-bridge-{completion_id}",
        )
        # Only a weak reference reaches the worker; dropping the stream cancels it.
        weakref.finalize(stream, _cancel_abandoned_worker, stream._task, channel)
        return stream

    async def _pump(
        self,
        backend_stream: BackendStream,
        channel: _Channel,
        stream_ref: weakref.ReferenceType[ChunkStream],
    ) -> None:
        stream = stream_ref()
        if stream is None:
            await backend_stream.aclose()
            return
        completion_id, created, model = stream.id, stream.created, stream.model
        del stream
        try:
            iterator = backend_stream.__aiter__()
            while True:
                try:
                    message = await iterator.__anext__()
                except StopAsyncIteration:
                    break
                except Exception as exc:
                    error = StreamTransportError(
                        f"receive from backend stream failed: {exc}"
                    )
                    error.__cause__ = exc
                    logger.warning(
                        "stream_receive_failed id=%s error_type=%s error=%s",
                        completion_id,
                        exc.__class__.__name__,
                        exc,
                    )
                    await channel.send(error)
                    break
                if message is None:
                    continue
                await channel.send(
                    ChatCompletionStreamResponse(
                        id=completion_id,
                        created=created,
                        model=model,
                        choices=[self._translator.to_stream_choice(message)],
                    )
                )
        except Exception as exc:
            logger.exception("stream_bridge_worker_failed id=%s", completion_id)
            consumer = stream_ref()
            if consumer is not None:
                consumer.worker_error = exc
        finally:
            channel.close()
            try:
                await backend_stream.aclose()
            except Exception as exc:
                logger.warning(
                    "stream_backend_close_failed id=%s error_type=%s error=%s",
                    completion_id,
                    exc.__class__.__name__,
                    exc,
                )


def _cancel_abandoned_worker(task: asyncio.Task[None], channel: _Channel) -> None:
    if task.done() or channel.closed:
        return
    loop = task.get_loop()
    if loop.is_closed():
        return
    logger.info("stream_abandoned task=%s", task.get_name())
    loop.call_soon_threadsafe(task.cancel)


def encode_sse_frame(chunk: ChatCompletionStreamResponse | dict[str, Any]) -> bytes:
    try:
        payload = chunk.to_wire() if isinstance(chunk, ChatCompletionStreamResponse) else chunk
        body = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError) as exc:
        raise SerializationError(f"could not encode stream chunk: {exc}") from exc
    return f"data: {body}\n\n".encode("utf-8")


async def iter_sse_frames(
    chunks: AsyncIterable[ChatCompletionStreamResponse | None],
) -> AsyncIterator[bytes]:
    """Frame chunks as SSE, always finishing with ``data: [DONE]``.

    An error raised once output has started is re-raised after the DONE
    frame so the client still sees a terminated stream.
    """
    emitted = False
    try:
        async for chunk in chunks:
            if chunk is None:
                continue
            try:
                frame = encode_sse_frame(chunk)
            except SerializationError:
                if not emitted:
                    raise
                logger.warning("sse_chunk_skipped reason=serialization_error")
                continue
            emitted = True
            yield frame
    except Exception:
        if emitted:
            yield DONE_FRAME
        raise
    finally:
        aclose = getattr(chunks, "aclose", None)
        if aclose is not None:
            await aclose()
    yield DONE_FRAME


class ByteSink(Protocol):
    def write(self, data: bytes, /) -> Any: ...


async def write_sse(
    chunks: AsyncIterable[ChatCompletionStreamResponse | None],
    writer: ByteSink | BinaryIO,
) -> None:
    async for frame in iter_sse_frames(chunks):
        writer.write(frame)
        flush = getattr(writer, "flush", None)
        if callable(flush):
            flush()
