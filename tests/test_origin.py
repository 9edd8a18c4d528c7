import asyncio

import httpx
import pytest

from bwproxy.core.config import Settings
from bwproxy.core.errors import FetchFailed, InvalidURL, OriginError, OriginRedirect
from bwproxy.core.origin import build_origin_headers, open_origin
from bwproxy.core.proxy_request import ProxyRequest
from conftest import streamed_response


def _open(origin, url, inbound_headers=None, client_host="10.0.0.7"):
    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(origin)) as client:
            response = await open_origin(client, ProxyRequest(url=url), inbound_headers or {}, client_host)
            body = b"".join([chunk async for chunk in response.raw_stream()])
            await response.aclose()
            return response, body

    return asyncio.run(run())


class TestOriginHeaders:

    def test_only_allow_listed_headers_are_forwarded(self):
        inbound = {
            "cookie": "a=1",
            "dnt": "1",
            "referer": "https://example.com/page",
            "range": "bytes=0-99",
            "authorization": "Bearer secret",
            "accept-language": "en",
            "user-agent": "RealBrowser/1.0",
        }
        headers = build_origin_headers(inbound, "10.0.0.7", Settings(ORIGIN_USER_AGENT="Synthetic/1.0"))
        assert headers["cookie"] == "a=1"
        assert headers["dnt"] == "1"
        assert headers["referer"] == "https://example.com/page"
        assert headers["range"] == "bytes=0-99"
        assert headers["user-agent"] == "Synthetic/1.0"
        assert "authorization" not in headers
        assert "accept-language" not in headers

    def test_forwarded_for_prefers_inbound_value(self):
        assert build_origin_headers({"x-forwarded-for": "1.2.3.4"}, "10.0.0.7")["x-forwarded-for"] == "1.2.3.4"
        assert build_origin_headers({}, "10.0.0.7")["x-forwarded-for"] == "10.0.0.7"

    def test_via_and_identity_encoding(self):
        headers = build_origin_headers({}, None)
        assert headers["via"] == "1.1 bandwidth-hero"
        assert headers["accept-encoding"] == "identity"


class TestOpenOrigin:

    def test_success_exposes_headers_and_body(self):
        seen = []

        def origin(request):
            seen.append(request)
            return streamed_response(200, b"abc", {"content-type": "image/png"})

        response, body = _open(origin, "https://example.com/a.png", {"cookie": "k=v"})
        assert response.status_code == 200
        assert response.content_type == "image/png"
        assert response.content_length == 3
        assert body == b"abc"
        assert seen[0].method == "GET"
        assert seen[0].headers["cookie"] == "k=v"
        assert seen[0].headers["x-forwarded-for"] == "10.0.0.7"

    def test_missing_content_length_counts_as_zero(self):
        def origin(request):
            return streamed_response(200, b"", {"content-type": "image/png", "content-length": "nope"})

        response, _ = _open(origin, "https://example.com/a.png")
        assert response.content_length == 0

    @pytest.mark.parametrize("status", [400, 403, 404, 500, 503])
    def test_error_status_raises(self, status):
        with pytest.raises(OriginError) as info:
            _open(lambda request: httpx.Response(status), "https://example.com/a.png")
        assert info.value.status_code == status

    def test_redirect_is_resolved_not_followed(self):
        calls = []

        def origin(request):
            calls.append(request.url)
            return httpx.Response(301, headers={"location": "/moved/b.jpg"})

        with pytest.raises(OriginRedirect) as info:
            _open(origin, "https://example.com/a/a.jpg")
        assert info.value.location == "https://example.com/moved/b.jpg"
        assert len(calls) == 1

    def test_3xx_without_location_is_returned(self):
        response, _ = _open(lambda request: streamed_response(304), "https://example.com/a.png")
        assert response.status_code == 304

    @pytest.mark.parametrize("url", ["not a url", "ftp://example.com/a.png", "http://", "/relative.png"])
    def test_malformed_url(self, url):
        with pytest.raises(InvalidURL):
            _open(lambda request: httpx.Response(200), url)

    def test_transport_error_is_fetch_failed(self):
        def origin(request):
            raise httpx.ConnectError("connection refused")

        with pytest.raises(FetchFailed):
            _open(origin, "https://example.com/a.png")

    def test_timeout_is_fetch_failed(self):
        def origin(request):
            raise httpx.ReadTimeout("too slow")

        with pytest.raises(FetchFailed):
            _open(origin, "https://example.com/a.png")
