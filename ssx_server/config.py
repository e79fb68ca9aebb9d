from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Literal, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .services.ens import EnsResolveOptions

log = logging.getLogger("ssx.settings")

SSX_API_URL = "https://api.ssx.id"


def _is_production() -> bool:
    return (os.getenv("APP_ENV") or "").strip().lower() == "production"


def _parse_origins(raw: str | None) -> list[str]:
    """CORS_ORIGINS as a JSON array or comma-separated list; order kept, duplicates dropped."""
    if raw is None:
        return ["http://localhost:3000"]
    raw = raw.strip()
    if raw in ("", "*"):
        return [raw] if raw else []
    items: list[str]
    if raw.startswith("["):
        try:
            items = [str(x) for x in json.loads(raw)]
        except (json.JSONDecodeError, TypeError):
            items = [raw]
    else:
        items = raw.split(",")
    return list(dict.fromkeys(o.strip() for o in items if o.strip()))


def _mask(s: str | None, keep: int = 4) -> str | None:
    if not s:
        return None
    return (s[:keep] + "…") if len(s) > keep else "…"


class Settings(BaseSettings):
    """Process configuration. Built once at startup and passed to create_app()."""

    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # --- Session cookie (consumed by the router's session middleware) ---
    signing_key: str = Field(default="dev_signing_key", alias="SSX_SIGNING_KEY")
    session_cookie_name: str = Field(default="ssx-session-storage", alias="SSX_SESSION_COOKIE")
    use_secure_cookies: bool = Field(default_factory=_is_production, alias="SSX_USE_SECURE_COOKIES")

    # --- Verification ---
    allow_contract_fallback: bool = Field(default=False, alias="SSX_ALLOW_CONTRACT_FALLBACK")
    expected_domain: Optional[str] = Field(default=None, alias="SSX_EXPECTED_DOMAIN")
    rpc_url: Optional[str] = Field(default=None, alias="SSX_RPC_URL")

    # --- ENS ---
    resolve_ens: bool = Field(default=False, alias="SSX_RESOLVE_ENS")
    resolve_ens_domain: bool = Field(default=True, alias="SSX_RESOLVE_ENS_DOMAIN")
    resolve_ens_avatar: bool = Field(default=True, alias="SSX_RESOLVE_ENS_AVATAR")

    # --- Audit events (EventSink) ---
    metrics_service: Optional[Literal["ssx", "custom"]] = Field(default=None, alias="SSX_METRICS_SERVICE")
    metrics_api_key: Optional[str] = Field(default=None, alias="SSX_METRICS_API_KEY")
    metrics_base_url: Optional[str] = Field(default=None, alias="SSX_METRICS_BASE_URL")
    metrics_timeout_sec: float = Field(default=10.0, alias="SSX_METRICS_TIMEOUT_SEC")

    # --- CORS ---
    cors_origins_raw: Optional[str] = Field(default=None, alias="CORS_ORIGINS")

    @property
    def cors_origins(self) -> list[str]:
        return _parse_origins(self.cors_origins_raw)

    @property
    def metrics_url(self) -> str | None:
        """Base URL of the audit event API, or None when events stay in-process."""
        if self.metrics_service == "ssx":
            return SSX_API_URL
        if self.metrics_service == "custom":
            return self.metrics_base_url or None
        return None

    @property
    def ens_options(self) -> EnsResolveOptions | None:
        """Default ENS options for logins that do not send their own, None when disabled."""
        if not self.resolve_ens:
            return None
        return EnsResolveOptions(domain=self.resolve_ens_domain, avatar=self.resolve_ens_avatar)

    def debug_dump(self) -> dict[str, Any]:
        return {
            "app_env": self.app_env,
            "signing_key": _mask(self.signing_key),
            "session_cookie_name": self.session_cookie_name,
            "use_secure_cookies": self.use_secure_cookies,
            "allow_contract_fallback": self.allow_contract_fallback,
            "expected_domain": self.expected_domain,
            "rpc_url": _mask(self.rpc_url, 16),
            "resolve_ens": self.ens_options.model_dump() if self.ens_options else False,
            "metrics_url": self.metrics_url,
            "metrics_api_key": _mask(self.metrics_api_key),
            "cors_origins": self.cors_origins,
        }


def load_settings(env_file: str | Path | None = None) -> Settings:
    """Read `.env` into the process environment, then build Settings once."""
    env_path = Path(env_file) if env_file else Path.cwd() / ".env"
    if env_path.is_file():
        log.info("Loading environment variables from: %s", env_path)
        load_dotenv(dotenv_path=env_path)
    settings = Settings()
    log.info("Loaded settings: %s", settings.debug_dump())
    return settings
