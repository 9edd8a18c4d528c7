"""Decide whether re-encoding an origin image is worth the CPU."""

from dataclasses import dataclass

from .config import Settings, settings as default_settings
from .proxy_request import OutputFormat

_TRANSPARENT_SUFFIXES = ("png", "gif")


@dataclass(frozen=True)
class CompressionVerdict:
    compress: bool
    content_type: str
    content_length: int

    def __bool__(self) -> bool:
        return self.compress


def should_compress(
    content_type: str,
    content_length: int,
    has_range: bool,
    output_format: OutputFormat,
    config: Settings = default_settings,
) -> CompressionVerdict:
    content_type = content_type or ""

    def verdict(value: bool) -> CompressionVerdict:
        return CompressionVerdict(value, content_type, content_length)

    if not content_type.startswith("image"):
        return verdict(False)
    # byte ranges cannot be honoured on a re-encoded body
    if content_length == 0 or has_range:
        return verdict(False)
    if (
        output_format is OutputFormat.JPEG
        and content_type.endswith(_TRANSPARENT_SUFFIXES)
        and content_length < config.MIN_TRANSPARENT_COMPRESS_LENGTH
    ):
        return verdict(False)
    if output_format is OutputFormat.WEBP and content_length < config.MIN_COMPRESS_LENGTH:
        return verdict(False)
    return verdict(True)
