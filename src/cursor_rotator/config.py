import os
import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from .cursor_wire import DEFAULT_CLIENT_VERSION, DEFAULT_TIMEZONE, UPSTREAM_URL
from .usage_manager import BLACKLIST_DURATION_SECONDS

lib_logger = logging.getLogger("cursor_rotator")

RESERVED_MODEL_PREFIX = "o1-"


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    value = env.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        lib_logger.warning(f"Invalid {name} '{value}'. Falling back to {default}.")
        return default


def _env_float(env: Mapping[str, str], name: str) -> Optional[float]:
    value = env.get(name)
    if value is None or value == "":
        return None
    try:
        parsed = float(value)
    except ValueError:
        lib_logger.warning(f"Invalid {name} '{value}'. Upstream requests will not time out.")
        return None
    return parsed if parsed > 0 else None


@dataclass
class GatewayConfig:
    """Process-level settings, read from the environment (and .env) at startup."""

    host: str = "0.0.0.0"
    port: int = 3000
    default_checksum: Optional[str] = None
    upstream_url: str = UPSTREAM_URL
    client_version: str = DEFAULT_CLIENT_VERSION
    timezone: str = DEFAULT_TIMEZONE
    instruction: str = ""
    blacklist_duration: int = BLACKLIST_DURATION_SECONDS
    upstream_timeout: Optional[float] = None
    reserved_model_prefix: str = RESERVED_MODEL_PREFIX

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "GatewayConfig":
        env = os.environ if env is None else env

        # The legacy variable name is kept so existing deployments keep their fingerprint.
        checksum = env.get("CURSOR_CHECKSUM") or env.get("x-cursor-checksum") or None

        blacklist_duration = _env_int(env, "BLACKLIST_DURATION_SECONDS", BLACKLIST_DURATION_SECONDS)
        if blacklist_duration < 1:
            lib_logger.warning(
                f"Invalid BLACKLIST_DURATION_SECONDS: {blacklist_duration}. Must be >= 1. "
                f"Using default ({BLACKLIST_DURATION_SECONDS})."
            )
            blacklist_duration = BLACKLIST_DURATION_SECONDS

        return cls(
            host=env.get("HOST", "0.0.0.0"),
            port=_env_int(env, "PORT", 3000),
            default_checksum=checksum,
            upstream_url=env.get("CURSOR_UPSTREAM_URL", UPSTREAM_URL),
            client_version=env.get("CURSOR_CLIENT_VERSION", DEFAULT_CLIENT_VERSION),
            timezone=env.get("CURSOR_TIMEZONE", DEFAULT_TIMEZONE),
            instruction=env.get("CURSOR_INSTRUCTION", ""),
            blacklist_duration=blacklist_duration,
            upstream_timeout=_env_float(env, "UPSTREAM_TIMEOUT"),
            reserved_model_prefix=env.get("RESERVED_MODEL_PREFIX", RESERVED_MODEL_PREFIX),
        )
