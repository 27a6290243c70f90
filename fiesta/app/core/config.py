import json
import re
from typing import Annotated, Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_cors_origins(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, list):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []
    if raw == "*":
        return ["*"]

    # JSON is the documented format; comma or space separated hosts are
    # accepted too so a hand-edited .env does not stop the app from booting.
    if raw.startswith(("[", '"', "'")):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip() for v in parsed]
            return [v for v in items if v]
        if isinstance(parsed, str):
            raw = parsed.strip()
            if not raw or raw == "[]":
                return []
            if raw == "*":
                return ["*"]

    origins: list[str] = []
    for part in (p for p in re.split(r"[,\s]+", raw) if p):
        if part == "*":
            return ["*"]
        if "://" in part:
            origins.append(part)
        else:
            origins.append(f"http://{part}")
            origins.append(f"https://{part}")

    # Preserve order, drop duplicates.
    return list(dict.fromkeys(origins))


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    debug: bool = False

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Fixed-window rate limiting (50 requests per 15 minutes per client)
    rate_limit_max_requests: int = 50
    rate_limit_window_ms: int = 15 * 60 * 1000
    rate_limit_sweep_interval_seconds: float = 300.0
    rate_limit_path_prefix: str = "/api/"

    # HTTP client connection pool
    httpx_connect_timeout: float = 10.0
    httpx_read_timeout: float = 120.0
    httpx_write_timeout: float = 10.0
    httpx_pool_timeout: float = 5.0
    httpx_keepalive_expiry: float = 30.0
    httpx_max_connections: int = 100
    httpx_max_keepalive_connections: int = 20

    # OpenRouter (shared key is used when the caller does not bring one)
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_referer: str = "http://localhost:3000"
    openrouter_title: str = "AI Fiesta"
    openrouter_default_model: str = "openrouter/auto"

    # Gemini through its OpenAI-compatible endpoint
    gemini_api_key: str = ""
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta/openai"
    gemini_default_model: str = "gemini-2.5-flash"

    # In-process mock backend for local development
    mock_provider_enabled: bool = True

    # Response classification
    classifier_scan_fallback: bool = True

    # Inbound request limits
    max_messages: int = 100
    max_message_chars: int = 50000
    max_model_chars: int = 100

    cors_origins: Annotated[list[str], NoDecode] = ["*"]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def decode_cors_origins(cls, v: Any) -> list[str]:
        return _parse_cors_origins(v)

    @field_validator("rate_limit_max_requests", "rate_limit_window_ms")
    @classmethod
    def validate_rate_limit_positive(cls, v: int) -> int:
        """Validate rate limit values are positive."""
        if v < 1:
            raise ValueError("Rate limit values must be at least 1")
        return v

    @field_validator("rate_limit_sweep_interval_seconds")
    @classmethod
    def validate_sweep_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("rate_limit_sweep_interval_seconds must be positive")
        return v

    @field_validator("httpx_connect_timeout", "httpx_read_timeout", "httpx_write_timeout")
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate timeout values are positive."""
        if v <= 0:
            raise ValueError("Timeout values must be positive")
        return v

    @field_validator("max_messages", "max_message_chars", "max_model_chars")
    @classmethod
    def validate_limits_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("request limits must be at least 1")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
