"""
Application configuration and settings.
"""

from functools import lru_cache
from pathlib import Path
from urllib.parse import urlsplit

import yaml
from pydantic_settings import BaseSettings

from caption.errors import ConfigurationError

SUPPORTED_PROXY_SCHEMES = {"http", "https", "socks5", "socks5h"}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Upstream
    youtube_base_url: str = "https://www.youtube.com"
    innertube_client_name: str = "ANDROID"
    innertube_client_version: str = "20.10.38"
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
    )
    accept_language: str = "en-US"
    upstream_timeout: float = 15.0
    default_language: str = "en"

    # Proxies
    proxy_url: str | None = None  # Single proxy (legacy PROXY_URL)
    proxy_urls: list[str] = []  # JSON list in PROXY_URLS
    allow_direct: bool = True  # Use a direct connection when no proxy is configured
    proxy_failure_threshold: int = 3
    proxy_blocked_penalty: int | None = None  # None = threshold (block cools at once)
    proxy_base_cooldown: float = 30.0
    proxy_max_cooldown: float = 900.0
    proxy_max_cooldowns: int | None = None  # Disable permanently after N cooldowns in a row
    proxy_window_size: int = 20

    # Rate limits (token buckets)
    global_bucket_capacity: int = 20
    global_refill_rate: float = 5.0  # tokens per second
    global_max_in_flight: int = 16
    proxy_bucket_capacity: int = 4
    proxy_refill_rate: float = 0.5
    proxy_max_in_flight: int = 2
    concurrency_retry_after: float = 0.25

    # Cache
    cache_ttl: float = 3600.0
    cache_capacity: int | None = 1024

    # Retries
    quota_attempts: int = 3
    quota_max_wait: float = 10.0
    proxy_attempts: int = 3
    rotation_backoff: float = 0.25  # First delay between proxy attempts (doubles)
    rotation_backoff_max: float = 2.0
    malformed_retries: int = 1
    request_timeout: float | None = 30.0  # Whole retrieval, None = no limit

    # Paths
    config_dir: Path = Path("/app/config")

    # Logging
    log_level: str = "INFO"
    log_format: str = "structured"  # "simple" or "structured"

    # Per-module log levels (optional overrides)
    log_level_upstream: str | None = None
    log_level_proxy_pool: str | None = None
    log_level_retrieval: str | None = None
    log_level_rate_limiter: str | None = None
    log_level_cache: str | None = None

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def validate_runtime(self) -> None:
        """
        Check settings combinations that pydantic types alone cannot express.

        Called once at startup, never during a retrieval.

        Raises:
            ConfigurationError: If any value is out of range
        """
        problems: list[str] = []

        if self.proxy_failure_threshold < 1:
            problems.append("proxy_failure_threshold must be >= 1")
        if self.proxy_blocked_penalty is not None and self.proxy_blocked_penalty < 1:
            problems.append("proxy_blocked_penalty must be >= 1")
        if self.proxy_base_cooldown <= 0:
            problems.append("proxy_base_cooldown must be > 0")
        if self.proxy_max_cooldown < self.proxy_base_cooldown:
            problems.append("proxy_max_cooldown must be >= proxy_base_cooldown")
        if self.proxy_max_cooldowns is not None and self.proxy_max_cooldowns < 1:
            problems.append("proxy_max_cooldowns must be >= 1")
        if self.proxy_window_size < 1:
            problems.append("proxy_window_size must be >= 1")

        for prefix in ("global", "proxy"):
            if getattr(self, f"{prefix}_bucket_capacity") < 1:
                problems.append(f"{prefix}_bucket_capacity must be >= 1")
            if getattr(self, f"{prefix}_refill_rate") <= 0:
                problems.append(f"{prefix}_refill_rate must be > 0")
            if getattr(self, f"{prefix}_max_in_flight") < 1:
                problems.append(f"{prefix}_max_in_flight must be >= 1")

        if self.cache_ttl <= 0:
            problems.append("cache_ttl must be > 0")
        if self.cache_capacity is not None and self.cache_capacity < 1:
            problems.append("cache_capacity must be >= 1 (or unset)")

        if self.quota_attempts < 1:
            problems.append("quota_attempts must be >= 1")
        if self.quota_max_wait < 0:
            problems.append("quota_max_wait must be >= 0")
        if self.proxy_attempts < 1:
            problems.append("proxy_attempts must be >= 1")
        if self.rotation_backoff < 0 or self.rotation_backoff_max < self.rotation_backoff:
            problems.append("rotation_backoff must be >= 0 and <= rotation_backoff_max")
        if self.request_timeout is not None and self.request_timeout <= 0:
            problems.append("request_timeout must be > 0 (or unset)")
        if self.malformed_retries < 0:
            problems.append("malformed_retries must be >= 0")
        if self.upstream_timeout <= 0:
            problems.append("upstream_timeout must be > 0")

        if problems:
            raise ConfigurationError("Invalid settings: " + "; ".join(problems))


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def load_proxies_config(settings: Settings | None = None) -> list[str]:
    """
    Collect proxy URLs from every configured source.

    Sources are merged in order and de-duplicated:
    1. PROXY_URLS (JSON list)
    2. PROXY_URL (single proxy)
    3. config_dir/proxies.yaml ("proxies: [url, ...]")

    Args:
        settings: Optional settings instance

    Returns:
        Ordered list of proxy URLs (empty if none configured)

    Raises:
        ConfigurationError: If the YAML file is unreadable or a URL is invalid
    """
    if settings is None:
        settings = get_settings()

    urls: list[str] = list(settings.proxy_urls)
    if settings.proxy_url:
        urls.append(settings.proxy_url)

    proxies_path = settings.config_dir / "proxies.yaml"
    if proxies_path.exists():
        try:
            with open(proxies_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Cannot parse {proxies_path}: {e}", original_error=e
            ) from e

        entries = data.get("proxies", []) if isinstance(data, dict) else None
        if not isinstance(entries, list):
            raise ConfigurationError(f"{proxies_path}: 'proxies' must be a list of URLs")
        urls.extend(str(entry) for entry in entries)

    seen: set[str] = set()
    result: list[str] = []
    for url in urls:
        url = url.strip()
        if not url or url in seen:
            continue
        _validate_proxy_url(url)
        seen.add(url)
        result.append(url)

    return result


def _validate_proxy_url(url: str) -> None:
    """
    Validate a proxy URL scheme and host.

    Raises:
        ConfigurationError: If the URL cannot be used as a proxy
    """
    parts = urlsplit(url)
    if parts.scheme not in SUPPORTED_PROXY_SCHEMES:
        raise ConfigurationError(
            f"Unsupported proxy scheme '{parts.scheme}' "
            f"(expected one of {sorted(SUPPORTED_PROXY_SCHEMES)})"
        )
    if not parts.hostname:
        raise ConfigurationError("Proxy URL has no host")
