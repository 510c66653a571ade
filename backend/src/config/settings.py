"""
Engine settings, read from the environment (and a local .env file if present).
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from privacy.errors import ConfigurationError

load_dotenv()

AUTHORITY_BACKENDS = ("memory", "http", "supabase")
CACHE_BACKENDS = ("memory", "file")


def _number(env: Mapping[str, str], name: str, default, cast):
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None


def _choice(env: Mapping[str, str], name: str, default: str, allowed) -> str:
    value = (env.get(name) or default).strip().lower()
    if value not in allowed:
        raise ConfigurationError(f"{name} must be one of {', '.join(allowed)}, got {value!r}")
    return value


@dataclass(frozen=True)
class EngineSettings:
    authority_backend: str = "memory"
    authority_url: Optional[str] = None
    authority_token: Optional[str] = None
    authority_timeout: float = 10.0
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    cache_backend: str = "memory"
    cache_dir: Path = Path(".privacy_cache")
    region_config_path: Optional[Path] = None
    staleness_seconds: int = 300
    compliance_threshold: int = 80
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "EngineSettings":
        """
        Build settings from ``env`` (defaults to ``os.environ``).

        Raises:
            ConfigurationError: a value is malformed or a backend is missing its credentials.
        """
        env = os.environ if env is None else env
        region_config = env.get("PRIVACY_REGION_CONFIG")
        settings = cls(
            authority_backend=_choice(env, "PRIVACY_AUTHORITY_BACKEND", "memory", AUTHORITY_BACKENDS),
            authority_url=env.get("PRIVACY_AUTHORITY_URL") or None,
            authority_token=env.get("PRIVACY_AUTHORITY_TOKEN") or None,
            authority_timeout=_number(env, "PRIVACY_AUTHORITY_TIMEOUT", 10.0, float),
            supabase_url=env.get("SUPABASE_URL") or None,
            supabase_key=(
                env.get("SUPABASE_SERVICE_ROLE_KEY")
                or env.get("SUPABASE_KEY")
                or env.get("SUPABASE_ANON_KEY")
                or None
            ),
            cache_backend=_choice(env, "PRIVACY_CACHE_BACKEND", "memory", CACHE_BACKENDS),
            cache_dir=Path(env.get("PRIVACY_CACHE_DIR") or ".privacy_cache"),
            region_config_path=Path(region_config) if region_config else None,
            staleness_seconds=_number(env, "PRIVACY_STALENESS_SECONDS", 300, int),
            compliance_threshold=_number(env, "PRIVACY_COMPLIANCE_THRESHOLD", 80, int),
            log_level=(env.get("PRIVACY_LOG_LEVEL") or "INFO").upper(),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.authority_backend == "http" and not self.authority_url:
            raise ConfigurationError("PRIVACY_AUTHORITY_URL is required for the http authority backend")
        if self.authority_backend == "supabase" and not (self.supabase_url and self.supabase_key):
            raise ConfigurationError("SUPABASE_URL and a Supabase key are required for the supabase backend")
        if not 0 <= self.compliance_threshold <= 100:
            raise ConfigurationError("PRIVACY_COMPLIANCE_THRESHOLD must be between 0 and 100")
        if self.staleness_seconds < 0:
            raise ConfigurationError("PRIVACY_STALENESS_SECONDS must not be negative")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
