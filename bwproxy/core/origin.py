"""
Streaming fetch of the upstream image.

The origin response is opened with `stream=True` so the body is pulled only by
whichever path (bypass or transcode) ends up consuming it. Redirects are never
followed here; they are handed back to the client instead.
"""

import logging
from dataclasses import dataclass
from typing import AsyncIterator, Mapping, Optional
from urllib.parse import urljoin, urlparse

import httpx

from .config import Settings, settings as default_settings
from .errors import FetchFailed, InvalidURL, OriginError, OriginRedirect
from .proxy_request import ProxyRequest

logger = logging.getLogger(__name__)

FORWARDED_REQUEST_HEADERS = ("cookie", "dnt", "referer", "range")


@dataclass
class OriginResponse:
    status_code: int
    headers: httpx.Headers
    response: httpx.Response

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")

    @property
    def content_length(self) -> int:
        try:
            return max(int(self.headers.get("content-length", "0")), 0)
        except ValueError:
            return 0

    async def raw_stream(self) -> AsyncIterator[bytes]:
        """Bytes exactly as received, for the bypass path."""
        async for chunk in self._guard(self.response.aiter_raw()):
            yield chunk

    async def decoded_stream(self) -> AsyncIterator[bytes]:
        async for chunk in self._guard(self.response.aiter_bytes()):
            yield chunk

    async def _guard(self, chunks: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        try:
            async for chunk in chunks:
                yield chunk
        except httpx.HTTPError as exc:
            raise FetchFailed(f"origin stream broke: {exc}") from exc

    async def aclose(self) -> None:
        await self.response.aclose()


def pick_headers(headers: Mapping[str, str], names) -> dict:
    return {name: headers[name] for name in names if name in headers}


def build_origin_headers(
    inbound_headers: Mapping[str, str],
    client_host: Optional[str],
    config: Settings = default_settings,
) -> dict:
    headers = pick_headers(inbound_headers, FORWARDED_REQUEST_HEADERS)
    headers.update(
        {
            "user-agent": config.ORIGIN_USER_AGENT,
            "x-forwarded-for": inbound_headers.get("x-forwarded-for") or client_host or "127.0.0.1",
            "via": config.VIA_HEADER,
            # the bypass path relays raw bytes, so they must not be content-encoded
            "accept-encoding": "identity",
        }
    )
    return headers


def _check_url(url: str) -> None:
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidURL(url)


async def open_origin(
    client: httpx.AsyncClient,
    proxy_request: ProxyRequest,
    inbound_headers: Mapping[str, str],
    client_host: Optional[str] = None,
    config: Settings = default_settings,
) -> OriginResponse:
    """
    Open a streaming GET to the target URL.

    Raises:
        InvalidURL: the URL cannot be requested.
        FetchFailed: transport failure or timeout.
        OriginError: the origin answered >= 400.
        OriginRedirect: the origin answered 3xx with a location.
    """
    url = proxy_request.url
    _check_url(url)
    headers = build_origin_headers(inbound_headers, client_host, config)

    try:
        request = client.build_request("GET", url, headers=headers)
        response = await client.send(request, stream=True, follow_redirects=False)
    except (httpx.InvalidURL, httpx.UnsupportedProtocol) as exc:
        raise InvalidURL(str(exc)) from exc
    except httpx.HTTPError as exc:
        logger.warning("[origin] fetch failed for %s: %s", url, exc)
        raise FetchFailed(str(exc) or exc.__class__.__name__) from exc

    status = response.status_code
    if status >= 400:
        await response.aclose()
        logger.info("[origin] %s answered %d", url, status)
        raise OriginError(status)

    location = response.headers.get("location")
    if 300 <= status < 400 and location:
        await response.aclose()
        target = urljoin(url, location)
        logger.info("[origin] %s redirects to %s", url, target)
        raise OriginRedirect(f"origin responded {status}", location=target)

    return OriginResponse(status_code=status, headers=response.headers, response=response)
