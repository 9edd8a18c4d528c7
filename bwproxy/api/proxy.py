"""
Image proxy endpoint.
"""

import logging

import httpx
from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import PlainTextResponse

from ..core.compression import should_compress
from ..core.config import settings
from ..core.errors import InvalidURL, MissingURL, OriginRedirect, RedirectableError
from ..core.origin import open_origin
from ..core.proxy_request import build_proxy_request
from ..core.responses import (
    bypass_response,
    compressed_response,
    invalid_url_response,
    redirect_to_origin,
)
from ..core.transcoder import TranscodePipeline

logger = logging.getLogger(__name__)

router = APIRouter(tags=["proxy"])


def get_http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http_client


@router.get("/")
async def proxy_image(request: Request, client: httpx.AsyncClient = Depends(get_http_client)):
    try:
        proxy_request = build_proxy_request(request.query_params, settings)
    except MissingURL:
        return PlainTextResponse(settings.APP_NAME)

    client_host = request.client.host if request.client else None
    try:
        origin = await open_origin(client, proxy_request, request.headers, client_host, settings)
    except InvalidURL as exc:
        logger.info("[proxy] invalid url %r: %s", proxy_request.url, exc)
        return invalid_url_response()
    except OriginRedirect as exc:
        return redirect_to_origin(exc.location or proxy_request.url)
    except RedirectableError as exc:
        return redirect_to_origin(proxy_request.url, exc)

    verdict = should_compress(
        origin.content_type,
        origin.content_length,
        "range" in request.headers,
        proxy_request.output_format,
        settings,
    )
    if not verdict:
        logger.info(
            "[proxy] bypass %s (%s, %d bytes)",
            proxy_request.url,
            verdict.content_type or "-",
            verdict.content_length,
        )
        return bypass_response(origin)

    pipeline = TranscodePipeline(origin.decoded_stream(), proxy_request, settings)
    try:
        await pipeline.start()
    except RedirectableError as exc:
        return redirect_to_origin(proxy_request.url, exc)
    finally:
        # the decoder has read the whole body by now, or given up on it
        await origin.aclose()
    return compressed_response(pipeline, proxy_request, verdict.content_length)


@router.get("/favicon.ico")
async def favicon() -> Response:
    return Response(status_code=204)
