"""Configuration management for the proxy server."""

from typing import Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from hlsproxy.models import HostReferer


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Opaque token configuration (32-byte UTF-8 string for AES-256)
    secret_key: Optional[str] = None

    # Link configuration
    link_mode: Literal["transparent", "tokenized"] = "transparent"
    public_base_url: str = ""  # Empty keeps rewritten links relative to the proxy

    # Known origins that insist on a fixed Referer/Origin pair
    host_referers: dict[str, HostReferer] = {
        "hls.krussdomi.com": HostReferer(origin="https://hls.krussdomi.com"),
    }

    # Upstream request configuration
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36"
    )
    error_excerpt_chars: int = 200

    # Response caching hints
    manifest_cache_control: str = "no-cache"
    segment_cache_control: str = "public, max-age=86400"

    # Server Configuration
    host: str = "0.0.0.0"
    port: int = 3001
    log_level: str = "info"

    # HTTP Client Configuration
    http_timeout_seconds: float = 30.0
    http_max_connections: int = 100
    http_max_keepalive_connections: int = 20

    @field_validator("host_referers")
    @classmethod
    def normalize_hostnames(cls, v: dict[str, HostReferer]) -> dict[str, HostReferer]:
        """Hostnames are matched case-insensitively against the target URL."""
        return {hostname.strip().lower(): referer for hostname, referer in v.items()}

    @property
    def secret_key_bytes(self) -> Optional[bytes]:
        """Secret key encoded the way tokens are minted (UTF-8)."""
        if not self.secret_key:
            return None
        return self.secret_key.encode("utf-8")


# Global settings instance
settings = Settings()
