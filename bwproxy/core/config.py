from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Load env from .env file
    model_config = {"env_file": ".env", "frozen": True}

    # Service
    APP_NAME: str = "bandwidth-hero-proxy"
    HOST: str = "0.0.0.0"
    PORT: int = 8080
    LOG_LEVEL: str = "INFO"

    # Encoding
    DEFAULT_QUALITY: int = 80
    MIN_COMPRESS_LENGTH: int = 1024
    MIN_TRANSPARENT_COMPRESS_LENGTH: int = 1024 * 100
    MAX_OUTPUT_HEIGHT: int = 16383  # largest dimension WebP can encode

    # Origin fetch
    ORIGIN_TIMEOUT: float = 10.0
    ORIGIN_USER_AGENT: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
    )
    VIA_HEADER: str = "1.1 bandwidth-hero"

    # Streaming to the client
    STREAM_CHUNK_SIZE: int = 64 * 1024
    STREAM_QUEUE_DEPTH: int = 16


# Instantiate settings
settings = Settings()
