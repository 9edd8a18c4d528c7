"""
Normalize the query string of an inbound proxy call.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional
from urllib.parse import unquote

from .config import Settings, settings as default_settings
from .errors import MissingURL

MAX_QUALITY = 100

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


class OutputFormat(str, Enum):
    WEBP = "webp"
    JPEG = "jpeg"

    @property
    def media_type(self) -> str:
        return f"image/{self.value}"


@dataclass(frozen=True)
class ProxyRequest:
    url: str
    output_format: OutputFormat = OutputFormat.WEBP
    grayscale: bool = True
    quality: int = 80


def parse_quality(raw: Optional[str], default: int) -> int:
    """Leading integer of `raw`, or `default` when missing or non-positive."""
    if raw is None:
        return default
    match = _LEADING_INT.match(raw)
    if not match:
        return default
    value = int(match.group(1))
    if value <= 0:
        return default
    return min(value, MAX_QUALITY)


def build_proxy_request(
    params: Mapping[str, str],
    config: Settings = default_settings,
) -> ProxyRequest:
    url = params.get("url")
    if not url:
        raise MissingURL("no url parameter")

    raw_quality = params.get("l")
    if raw_quality is None:
        raw_quality = params.get("quality")

    return ProxyRequest(
        url=unquote(url),
        output_format=OutputFormat.JPEG if "jpeg" in params else OutputFormat.WEBP,
        grayscale=params.get("bw") != "0",
        quality=parse_quality(raw_quality, config.DEFAULT_QUALITY),
    )
