"""
Response assembly for the bypass, compress and failure paths.
"""

import logging
from typing import AsyncIterator, Awaitable, Callable, Optional
from urllib.parse import quote

from fastapi.responses import PlainTextResponse, Response, StreamingResponse
from starlette.datastructures import MutableHeaders
from starlette.types import Receive, Scope, Send

from .errors import FetchFailed, MidStreamWriteFailed
from .origin import OriginResponse, pick_headers
from .proxy_request import ProxyRequest
from .transcoder import TranscodePipeline

logger = logging.getLogger(__name__)

BYPASS_HEADERS = ("accept-ranges", "content-type", "content-length", "content-range")
CACHING_HEADERS = ("cache-control", "expires", "date", "etag")
CROSS_ORIGIN_HEADERS = {
    "content-encoding": "identity",
    "access-control-allow-origin": "*",
    "cross-origin-resource-policy": "cross-origin",
    "cross-origin-embedder-policy": "unsafe-none",
}

# encodeURI's reserved set, plus % so existing escapes are kept
_URI_SAFE = ";,/?:@&=+$!*'()#%"


class ClosingStreamingResponse(StreamingResponse):
    """
    StreamingResponse that always runs `on_close` once the ASGI call ends.

    The body iterator's own cleanup only runs if iteration began; a client
    that drops before the response start is sent would otherwise leave the
    producer parked.
    """

    def __init__(self, content: AsyncIterator[bytes], on_close: Callable[[], Awaitable[None]], **kwargs):
        super().__init__(content, **kwargs)
        self._on_close = on_close

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self._on_close()


def encode_uri(url: str) -> str:
    return quote(url, safe=_URI_SAFE)


def bytes_saved(original_size: int, final_size: int) -> int:
    return max(original_size - final_size, 0)


async def _relay(origin: OriginResponse) -> AsyncIterator[bytes]:
    try:
        async for chunk in origin.raw_stream():
            yield chunk
    except FetchFailed as exc:
        logger.warning("[proxy] origin broke mid-relay: %s", exc)
        raise MidStreamWriteFailed(str(exc)) from exc
    finally:
        await origin.aclose()


def bypass_response(origin: OriginResponse) -> StreamingResponse:
    headers = dict(CROSS_ORIGIN_HEADERS)
    headers.update(pick_headers(origin.headers, BYPASS_HEADERS))
    # raw bytes are relayed, so they keep whatever coding the origin applied
    if "content-encoding" in origin.headers:
        headers["content-encoding"] = origin.headers["content-encoding"]
    headers["x-proxy-bypass"] = "1"
    return ClosingStreamingResponse(
        _relay(origin),
        on_close=origin.aclose,
        status_code=origin.status_code,
        headers=headers,
    )


def compressed_response(
    pipeline: TranscodePipeline,
    proxy_request: ProxyRequest,
    original_size: int,
) -> StreamingResponse:
    headers = dict(CROSS_ORIGIN_HEADERS)
    headers["content-type"] = proxy_request.output_format.media_type
    headers["x-original-size"] = str(original_size)

    info = pipeline.info
    if info is not None:
        headers["content-length"] = str(info.size)
        headers["x-bytes-saved"] = str(bytes_saved(original_size, info.size))
        logger.info(
            "[proxy] %s: %d -> %d bytes (%s)",
            proxy_request.url,
            original_size,
            info.size,
            proxy_request.output_format.value,
        )
    else:
        logger.info("[proxy] %s: output exceeds the stream window, sending chunked", proxy_request.url)

    async def close_pipeline() -> None:
        pipeline.close()

    return ClosingStreamingResponse(pipeline.stream(), on_close=close_pipeline, status_code=200, headers=headers)


def scrub_caching_headers(headers: MutableHeaders) -> None:
    for name in CACHING_HEADERS:
        if name in headers:
            del headers[name]


def redirect_to_origin(url: str, reason: Optional[BaseException] = None) -> Response:
    """302 back to the original resource so the client can fetch it directly."""
    if reason is not None:
        logger.warning("[proxy] redirecting to origin %s: %s", url, reason)
    response = Response(status_code=302, headers={"location": encode_uri(url), "content-length": "0"})
    scrub_caching_headers(response.headers)
    return response


def invalid_url_response() -> Response:
    return PlainTextResponse("Invalid URL", status_code=400)
