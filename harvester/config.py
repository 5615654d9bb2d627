# harvester/config.py
import os
from functools import lru_cache
from typing import Optional
from urllib.parse import quote

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


def _get_int_env(name, default):
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _get_float_env(name, default):
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _get_bool_env(name, default):
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _get_str_env(name, default=None):
    raw = os.getenv(name)
    if raw is None:
        return default
    stripped = raw.strip()
    return stripped or default


class Settings(BaseModel):
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "catalog"
    profile_path: Optional[str] = None

    proxy_host: Optional[str] = None
    proxy_port: Optional[int] = None
    proxy_user: Optional[str] = None
    proxy_pass: Optional[str] = None
    proxy_url_override: Optional[str] = None

    max_attempts: int = Field(20, ge=1)
    timeout_seconds: float = Field(30.0, gt=0)
    direct_attempts: int = Field(3, ge=1)
    probe_max_attempts: int = Field(3, ge=1)

    batch_threads: int = Field(20, ge=1)
    batch_force_proxy: bool = True
    product_batch_size: int = Field(10, ge=1)

    log_buffer_size: int = Field(1000, ge=1)
    log_tail: int = Field(300, ge=1)

    page_delay_min: float = Field(0.2, ge=0)
    page_delay_max: float = Field(0.5, ge=0)

    @property
    def proxy_url(self) -> Optional[str]:
        """Upstream proxy for the proxied transport, or None when unconfigured."""
        if self.proxy_url_override:
            return self.proxy_url_override
        if not self.proxy_host or not self.proxy_port:
            return None
        auth = ""
        if self.proxy_user:
            auth = quote(self.proxy_user, safe="")
            if self.proxy_pass:
                auth += ":" + quote(self.proxy_pass, safe="")
            auth += "@"
        return f"http://{auth}{self.proxy_host}:{self.proxy_port}"


def load_settings() -> Settings:
    """Read every knob from the environment (and .env), falling back to defaults."""
    defaults = Settings()
    return Settings(
        mongo_uri=_get_str_env("MONGO_URI", defaults.mongo_uri),
        mongo_db=_get_str_env("MONGO_DB", defaults.mongo_db),
        profile_path=_get_str_env("HARVEST_PROFILE_PATH"),
        proxy_host=_get_str_env("PROXY_HOST"),
        proxy_port=_get_int_env("PROXY_PORT", None),
        proxy_user=_get_str_env("PROXY_USER"),
        proxy_pass=_get_str_env("PROXY_PASS"),
        proxy_url_override=_get_str_env("PROXY_URL"),
        max_attempts=max(1, _get_int_env("FETCH_MAX_ATTEMPTS", defaults.max_attempts)),
        timeout_seconds=max(
            1.0, _get_float_env("FETCH_TIMEOUT", defaults.timeout_seconds)
        ),
        direct_attempts=max(
            1, _get_int_env("FETCH_DIRECT_ATTEMPTS", defaults.direct_attempts)
        ),
        probe_max_attempts=max(
            1, _get_int_env("PROBE_MAX_ATTEMPTS", defaults.probe_max_attempts)
        ),
        batch_threads=max(1, _get_int_env("BATCH_THREADS", defaults.batch_threads)),
        batch_force_proxy=_get_bool_env("BATCH_FORCE_PROXY", defaults.batch_force_proxy),
        product_batch_size=max(
            1, _get_int_env("PRODUCT_BATCH_SIZE", defaults.product_batch_size)
        ),
        log_buffer_size=max(1, _get_int_env("LOG_BUFFER_SIZE", defaults.log_buffer_size)),
        log_tail=max(1, _get_int_env("LOG_TAIL", defaults.log_tail)),
        page_delay_min=max(0.0, _get_float_env("PAGE_DELAY_MIN", defaults.page_delay_min)),
        page_delay_max=max(0.0, _get_float_env("PAGE_DELAY_MAX", defaults.page_delay_max)),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
