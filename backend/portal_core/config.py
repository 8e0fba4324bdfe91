from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path

from .errors import LocalConfigError

logger = logging.getLogger(__name__)

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_TRUTHY = {"1", "true", "yes", "on"}

DEFAULT_MESSENGER_BASE_URL = "https://messenger.myrocky.ca"
DEFAULT_CALENDLY_BASE_URL = "http://3.99.130.153"
DEFAULT_ROCKY_API_URL = "https://rocky-headless-git-staging-rocky-health.vercel.app"
DEFAULT_PORTAL_HOST = "http://localhost:3000"


def load_local_env_file(path: Path) -> None:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not _ENV_KEY_RE.fullmatch(key):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def bootstrap_local_env() -> None:
    repo_root = Path(__file__).resolve().parents[2]
    for candidate in (repo_root / ".env", repo_root / "backend/.env"):
        if candidate.exists():
            load_local_env_file(candidate)


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


def env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", name, raw)
        return default


def require_env(name: str) -> str:
    value = env_str(name)
    if not value:
        logger.error("Missing required environment variable %s", name)
        raise LocalConfigError("Server configuration error", details=f"{name} is not configured")
    return value


def debug_payloads_enabled() -> bool:
    return env_flag("PORTAL_DEBUG_PAYLOADS")


def configure_logging() -> None:
    level_name = env_str("PORTAL_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _with_scheme(url: str, scheme: str = "https") -> str:
    if url.startswith("http://") or url.startswith("https://"):
        return url
    return f"{scheme}://{url}"


@dataclass(frozen=True)
class MessengerSettings:
    base_url: str
    email: str
    password: str
    secret: str
    token_ttl_seconds: float


@dataclass(frozen=True)
class WooCommerceSettings:
    base_url: str
    consumer_key: str
    consumer_secret: str
    timeout_seconds: float


def crm_host() -> str:
    return require_env("CRM_HOST").rstrip("/")


def crm_timeout_seconds() -> float:
    return env_float("CRM_TIMEOUT_SECONDS", 30.0)


def store_base_url() -> str:
    return require_env("BASE_URL").rstrip("/")


def messenger_settings() -> MessengerSettings:
    missing = [
        name
        for name in ("MESSENGER_EMAIL", "MESSENGER_PASSWORD", "MESSENGER_SECRET")
        if not env_str(name)
    ]
    if missing:
        logger.error("Missing messenger credentials: %s", ", ".join(missing))
        raise LocalConfigError(
            "Server configuration error. Missing messenger credentials.",
            details=f"{', '.join(missing)} not configured",
        )
    return MessengerSettings(
        base_url=env_str("MESSENGER_BASE_URL", DEFAULT_MESSENGER_BASE_URL).rstrip("/"),
        email=env_str("MESSENGER_EMAIL"),
        password=env_str("MESSENGER_PASSWORD"),
        secret=env_str("MESSENGER_SECRET"),
        token_ttl_seconds=env_float("MESSENGER_TOKEN_TTL_SECONDS", 300.0),
    )


def woocommerce_settings() -> WooCommerceSettings:
    missing = [name for name in ("BASE_URL", "CONSUMER_KEY", "CONSUMER_SECRET") if not env_str(name)]
    if missing:
        logger.error("Missing WooCommerce configuration: %s", ", ".join(missing))
        raise LocalConfigError(
            "Server configuration error. WooCommerce is not configured.",
            details=f"{', '.join(missing)} not configured",
        )
    return WooCommerceSettings(
        base_url=env_str("BASE_URL").rstrip("/"),
        consumer_key=env_str("CONSUMER_KEY"),
        consumer_secret=env_str("CONSUMER_SECRET"),
        timeout_seconds=env_float("WOOCOMMERCE_TIMEOUT_SECONDS", 300.0),
    )


def calendly_base_url() -> str:
    raw = env_str("CALENDLY_BASE_URL", DEFAULT_CALENDLY_BASE_URL)
    return _with_scheme(raw, scheme="http").rstrip("/")


def portal_host() -> str:
    raw = env_str("PORTAL_HOST") or env_str("NEXT_PUBLIC_BASE_URL") or DEFAULT_PORTAL_HOST
    return raw.rstrip("/")


def rocky_api_url() -> str:
    return env_str("NEXT_PUBLIC_ROCKY_API_URL", DEFAULT_ROCKY_API_URL).rstrip("/")


def allowed_origins() -> list[str]:
    raw = env_str("ALLOWED_ORIGINS", DEFAULT_PORTAL_HOST)
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def ensure_scheme(url: str) -> str:
    return _with_scheme(url)
