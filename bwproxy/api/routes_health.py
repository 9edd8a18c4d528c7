from fastapi import APIRouter, status
from PIL import features

from ..core.config import settings
from ..core.proxy_request import OutputFormat

router = APIRouter(tags=["health"])

_CODEC_FEATURES = {
    OutputFormat.WEBP: "webp",
    OutputFormat.JPEG: "jpg",
}


def check_codecs() -> dict:
    """Which output formats the installed Pillow build can encode."""
    return {fmt.value: bool(features.check(name)) for fmt, name in _CODEC_FEATURES.items()}


@router.get("/health", status_code=status.HTTP_200_OK)
async def health() -> dict:
    return {"status": "ok"}


@router.get("/health/detailed", status_code=status.HTTP_200_OK)
async def detailed_health() -> dict:
    """Codec availability plus the thresholds the proxy runs with."""
    codecs = check_codecs()
    return {
        "status": "online" if all(codecs.values()) else "degraded",
        "app": settings.APP_NAME,
        "codecs": codecs,
        "thresholds": {
            "min_compress_length": settings.MIN_COMPRESS_LENGTH,
            "min_transparent_compress_length": settings.MIN_TRANSPARENT_COMPRESS_LENGTH,
            "max_output_height": settings.MAX_OUTPUT_HEIGHT,
            "default_quality": settings.DEFAULT_QUALITY,
        },
    }
