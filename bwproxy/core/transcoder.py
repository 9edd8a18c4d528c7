"""
Streaming re-encoder built on Pillow.

The origin body is fed incrementally into `PIL.ImageFile.Parser`. The header
is identified after the first few chunks, which is enough to finalize the
encode options (only the pixel height matters). Once the whole frame is
decoded it is transformed and encoded in a worker thread.

Encoded bytes reach the client through a queue holding at most
STREAM_QUEUE_DEPTH chunks. The encoder thread blocks on a full window and only
continues once the response iterator has taken a chunk; the ASGI server in turn only asks for the next chunk after the
previous one was written to the socket. A slow client therefore stalls the
encoder instead of growing a buffer.
"""

import asyncio
import io
import logging
import threading
from concurrent.futures import CancelledError as FutureCancelledError
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Callable, Optional

from PIL import Image, ImageFile

from .config import Settings, settings as default_settings
from .errors import MetadataReadFailed, MidStreamWriteFailed, TransformFailed
from .proxy_request import OutputFormat, ProxyRequest

logger = logging.getLogger(__name__)

# Pillow signals unreadable or hostile input with these.
_ENGINE_ERRORS = (OSError, ValueError, SyntaxError, Image.DecompressionBombError)

_EOF = object()


class PipelineState(str, Enum):
    IDLE = "idle"
    FETCHING_METADATA = "fetching_metadata"
    TRANSFORMING = "transforming"
    STREAMING = "streaming"
    DONE = "done"
    FAILED = "failed"


class PipelineClosed(Exception):
    """The consumer went away; the encoder must stop."""


@dataclass(frozen=True)
class ImageMetadata:
    width: int
    height: int
    format: Optional[str]
    mode: str


@dataclass(frozen=True)
class TransformPlan:
    output_format: OutputFormat
    quality: int
    grayscale: bool
    resize_height: Optional[int] = None


@dataclass(frozen=True)
class EncodeInfo:
    size: int
    width: int
    height: int


@dataclass(frozen=True)
class _Failure:
    error: BaseException


def plan_transform(metadata: ImageMetadata, proxy_request: ProxyRequest, max_height: int) -> TransformPlan:
    resize_height = max_height if metadata.height > max_height else None
    return TransformPlan(
        output_format=proxy_request.output_format,
        quality=proxy_request.quality,
        grayscale=proxy_request.grayscale,
        resize_height=resize_height,
    )


def _has_alpha(image: Image.Image) -> bool:
    return image.mode in ("RGBA", "LA", "PA") or (image.mode == "P" and "transparency" in image.info)


def apply_transform(image: Image.Image, plan: TransformPlan) -> Image.Image:
    """Resize, desaturate and convert to a mode the target encoder accepts."""
    if image.mode == "P":
        image = image.convert("RGBA" if _has_alpha(image) else "RGB")

    if plan.resize_height is not None and image.height > plan.resize_height:
        width = max(1, round(image.width * plan.resize_height / image.height))
        image = image.resize((width, plan.resize_height), Image.Resampling.LANCZOS)

    keep_alpha = plan.output_format is OutputFormat.WEBP and _has_alpha(image)
    if plan.grayscale:
        image = image.convert("LA" if keep_alpha else "L")

    if plan.output_format is OutputFormat.WEBP:
        target_mode = "RGBA" if keep_alpha else "RGB"
    else:
        target_mode = "L" if image.mode == "L" else "RGB"
    if image.mode != target_mode:
        image = image.convert(target_mode)
    return image


def encode_image(image: Image.Image, plan: TransformPlan, fp) -> None:
    # favour encode speed over ratio; the client is waiting on this
    if plan.output_format is OutputFormat.WEBP:
        image.save(fp, format="WEBP", quality=plan.quality, method=0)
    else:
        image.save(fp, format="JPEG", quality=plan.quality, optimize=False, progressive=False)


class _ChannelWriter(io.RawIOBase):
    """
    File object handed to Pillow that cuts output into chunks on a queue.

    At most `slots` data chunks sit in the queue at once. The end marker and
    failure records take no slot, so an output that exactly fills the window
    still completes without waiting on the consumer.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        queue: asyncio.Queue,
        slots: asyncio.Semaphore,
        chunk_size: int,
        on_blocked: Callable[[], None],
    ):
        super().__init__()
        self._loop = loop
        self._queue = queue
        self._slots = slots
        self._chunk_size = chunk_size
        self._on_blocked = on_blocked
        self._buffer = bytearray()
        self._cancelled = threading.Event()
        self._pending = None
        self.total = 0

    def writable(self) -> bool:
        return True

    def write(self, data) -> int:
        size = len(data)
        self._buffer += data
        self.total += size
        while len(self._buffer) >= self._chunk_size:
            chunk = bytes(self._buffer[: self._chunk_size])
            del self._buffer[: self._chunk_size]
            self.put(chunk)
        return size

    def finish(self) -> None:
        if self._buffer:
            self.put(bytes(self._buffer))
            self._buffer.clear()
        self.put(_EOF)

    def fail(self, error: BaseException) -> None:
        self._buffer.clear()
        self.put(_Failure(error))

    async def _enqueue(self, item) -> None:
        if isinstance(item, bytes):
            if self._slots.locked():
                self._on_blocked()
            await self._slots.acquire()
        self._queue.put_nowait(item)

    def put(self, item) -> None:
        """Blocks the calling thread while every slot is taken."""
        if self._cancelled.is_set():
            raise PipelineClosed()
        future = asyncio.run_coroutine_threadsafe(self._enqueue(item), self._loop)
        self._pending = future
        if self._cancelled.is_set():
            future.cancel()
        try:
            future.result()
        except FutureCancelledError as exc:
            raise PipelineClosed() from exc

    def cancel(self) -> None:
        self._cancelled.set()
        pending = self._pending
        if pending is not None:
            pending.cancel()


def _discard_result(task: asyncio.Task) -> None:
    if not task.cancelled():
        task.exception()


class TranscodePipeline:
    """
    Re-encode one origin body for one response.

    `start()` consumes the source and returns once the response can begin:
    either the encoder finished (``info`` carries the final size) or the
    stream window filled up first. `stream()` then yields the encoded chunks.
    """

    def __init__(
        self,
        source: AsyncIterator[bytes],
        proxy_request: ProxyRequest,
        config: Settings = default_settings,
    ):
        self._source = source
        self._request = proxy_request
        self._config = config
        self._queue: asyncio.Queue = asyncio.Queue()
        self._slots = asyncio.Semaphore(max(1, config.STREAM_QUEUE_DEPTH))
        self._metadata: Optional[asyncio.Future] = None
        self._blocked = asyncio.Event()
        self._writer: Optional[_ChannelWriter] = None
        self._encode_task: Optional[asyncio.Task] = None
        self.state = PipelineState.IDLE

    def _set_state(self, state: PipelineState) -> None:
        logger.debug("[transcode] %s -> %s", self.state.value, state.value)
        self.state = state

    async def metadata(self) -> ImageMetadata:
        return await self._metadata

    @property
    def info(self) -> Optional[EncodeInfo]:
        task = self._encode_task
        if task is None or not task.done() or task.cancelled() or task.exception() is not None:
            return None
        return task.result()

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        self._metadata = loop.create_future()
        try:
            image = await self._read_source()
            plan = plan_transform(await self._metadata, self._request, self._config.MAX_OUTPUT_HEIGHT)

            self._set_state(PipelineState.TRANSFORMING)
            self._writer = _ChannelWriter(
                loop, self._queue, self._slots, self._config.STREAM_CHUNK_SIZE, self._blocked.set
            )
            self._encode_task = asyncio.create_task(asyncio.to_thread(self._encode, image, plan, self._writer))
            blocked = asyncio.create_task(self._blocked.wait())
            try:
                await asyncio.wait({self._encode_task, blocked}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                blocked.cancel()
            if self._encode_task.done():
                self._encode_task.result()
        except BaseException:
            self._set_state(PipelineState.FAILED)
            self.close()
            raise

    async def _read_source(self) -> Image.Image:
        self._set_state(PipelineState.FETCHING_METADATA)
        parser = ImageFile.Parser()
        try:
            async for chunk in self._source:
                if not chunk:
                    continue
                await asyncio.to_thread(parser.feed, chunk)
                if not self._metadata.done() and parser.image is not None:
                    self._reveal(parser.image)
            image = await asyncio.to_thread(parser.close)
        except _ENGINE_ERRORS as exc:
            if not self._metadata.done():
                raise MetadataReadFailed(str(exc)) from exc
            raise TransformFailed(str(exc)) from exc
        if not self._metadata.done():
            self._reveal(image)
        return image

    def _reveal(self, image: Image.Image) -> None:
        metadata = ImageMetadata(width=image.width, height=image.height, format=image.format, mode=image.mode)
        logger.debug("[transcode] metadata %s", metadata)
        self._metadata.set_result(metadata)

    def _encode(self, image: Image.Image, plan: TransformPlan, writer: _ChannelWriter) -> EncodeInfo:
        try:
            output = apply_transform(image, plan)
            encode_image(output, plan, writer)
        except _ENGINE_ERRORS as exc:
            writer.fail(exc)
            raise TransformFailed(str(exc)) from exc
        info = EncodeInfo(size=writer.total, width=output.width, height=output.height)
        writer.finish()
        return info

    async def stream(self) -> AsyncIterator[bytes]:
        self._set_state(PipelineState.STREAMING)
        try:
            while True:
                item = await self._queue.get()
                if item is _EOF:
                    break
                if isinstance(item, _Failure):
                    raise MidStreamWriteFailed(str(item.error)) from item.error
                self._slots.release()
                yield item
            await self._encode_task
            self._set_state(PipelineState.DONE)
        except BaseException:
            self._set_state(PipelineState.FAILED)
            raise
        finally:
            self.close()

    def close(self) -> None:
        """Abort the encoder if it is still running; safe to call twice."""
        if self.state not in (PipelineState.DONE, PipelineState.FAILED):
            self._set_state(PipelineState.FAILED)
        if self._writer is not None:
            self._writer.cancel()
        if self._encode_task is not None:
            self._encode_task.add_done_callback(_discard_result)
