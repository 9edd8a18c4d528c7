"""
Shared fixtures: synthetic images and an app wired to a fake origin.
"""

import random
from io import BytesIO

import httpx
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from bwproxy.api.proxy import get_http_client
from bwproxy.main import app

_FILL = {"RGB": (200, 40, 40), "RGBA": (200, 40, 40, 128), "LA": (128, 255)}


def make_image_bytes(fmt: str = "JPEG", size=(64, 64), mode: str = "RGB", noisy: bool = False, **save_kwargs) -> bytes:
    """Encode a synthetic image; `noisy` defeats compression so the file stays large."""
    if noisy:
        rng = random.Random(1234)
        raw = rng.randbytes(size[0] * size[1] * len(mode))
        image = Image.frombytes(mode, size, raw)
    else:
        image = Image.new(mode, size, color=_FILL.get(mode, 128))
    buffer = BytesIO()
    image.save(buffer, format=fmt, **save_kwargs)
    return buffer.getvalue()


def streamed_response(status_code: int = 200, content: bytes = b"", headers=None) -> httpx.Response:
    """
    Unread response, like one off the wire.

    `httpx.Response(content=...)` is read on construction, which makes
    `aiter_raw()` raise StreamConsumed.
    """
    merged = {"content-length": str(len(content))}
    merged.update(headers or {})
    return httpx.Response(status_code, headers=merged, stream=httpx.ByteStream(content))


class FakeOrigin:
    """Records outbound requests and answers with a canned response."""

    def __init__(self):
        self.requests = []
        self.responder = lambda request: streamed_response(404)

    def reply(self, status_code=200, content=b"", headers=None):
        self.responder = lambda request: streamed_response(status_code, content, headers)

    def fail_with(self, exc: Exception):
        def responder(request):
            raise exc
        self.responder = responder

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)


@pytest.fixture
def origin():
    return FakeOrigin()


@pytest.fixture
def client(origin):
    """TestClient whose origin fetches are answered by `origin`"""
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(origin), follow_redirects=False)
    app.dependency_overrides[get_http_client] = lambda: http_client
    try:
        yield TestClient(app, follow_redirects=False)
    finally:
        app.dependency_overrides.pop(get_http_client, None)
