"""
pdp_core.config
---------------
Deployment settings for the signing backend and the PDP pipeline.

Values come from the environment (``from_env``); tests build the dataclasses
directly. Parsing is strict: a malformed number or an unknown mode raises
ValueError instead of silently falling back to a default.
"""

from __future__ import annotations
import os
from dataclasses import dataclass, replace
from typing import Optional

HSM_MODES = ("simulator", "hardware", "cloud")
PDP_MODES = ("simulation", "production")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_choice(name: str, default: str, choices) -> str:
    value = os.getenv(name, default).strip().lower()
    if value not in choices:
        raise ValueError(f"{name} must be one of {', '.join(choices)}, got {value!r}")
    return value


@dataclass(frozen=True)
class HSMSettings:
    mode: str = "simulator"
    provider: Optional[str] = None
    cloud_provider: Optional[str] = None
    simulator_storage: str = "hsm-simulator"
    simulator_encryption_key: Optional[str] = None
    remote_url: Optional[str] = None
    api_key: Optional[str] = None
    timeout: int = 30
    default_algorithm: str = "RS256"
    default_key_size: int = 2048

    @classmethod
    def from_env(cls) -> "HSMSettings":
        return cls(
            mode=_env_choice("HSM_MODE", "simulator", HSM_MODES),
            provider=os.getenv("HSM_PROVIDER") or None,
            cloud_provider=os.getenv("HSM_CLOUD_PROVIDER") or None,
            simulator_storage=os.getenv("HSM_SIMULATOR_KEY_STORAGE", "hsm-simulator"),
            simulator_encryption_key=os.getenv("HSM_SIMULATOR_ENCRYPTION_KEY") or None,
            remote_url=os.getenv("HSM_REMOTE_URL") or None,
            api_key=os.getenv("HSM_API_KEY") or None,
            timeout=_env_int("HSM_TIMEOUT", 30),
            default_algorithm=os.getenv("HSM_DEFAULT_ALGORITHM", "RS256").upper(),
            default_key_size=_env_int("HSM_DEFAULT_KEY_SIZE", 2048),
        )


@dataclass(frozen=True)
class PDPSettings:
    mode: str = "simulation"
    base_url: str = "https://sandbox.pdp.dgfip.fr"
    oauth_url: str = "https://auth.pdp.dgfip.fr/oauth/token"
    api_version: str = "v1"
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    scope: str = "invoice_submit invoice_read"
    timeout: int = 30
    retry_attempts: int = 3
    retry_delay: int = 60
    reconcile_interval: int = 120
    simulation_delay: int = 30
    simulation_error_rate: int = 0
    stale_after: int = 86400
    claim_timeout: int = 900
    max_file_size: int = 10 * 1024 * 1024
    email_notifications: bool = True
    webhook_secret: Optional[str] = None
    db_path: str = "db/pdp_state.db"
    signing_key_id: Optional[str] = None

    def __post_init__(self):
        if self.mode not in PDP_MODES:
            raise ValueError(f"unknown PDP mode: {self.mode}")
        if self.retry_attempts < 1:
            raise ValueError("retry_attempts must be >= 1")
        if not 0 <= self.simulation_error_rate <= 100:
            raise ValueError("simulation_error_rate must be within 0..100")

    @classmethod
    def from_env(cls) -> "PDPSettings":
        return cls(
            mode=_env_choice("PDP_MODE", "simulation", PDP_MODES),
            base_url=os.getenv("PDP_BASE_URL", "https://sandbox.pdp.dgfip.fr").rstrip("/"),
            oauth_url=os.getenv("PDP_OAUTH_URL", "https://auth.pdp.dgfip.fr/oauth/token"),
            api_version=os.getenv("PDP_API_VERSION", "v1"),
            client_id=os.getenv("PDP_CLIENT_ID") or None,
            client_secret=os.getenv("PDP_CLIENT_SECRET") or None,
            scope=os.getenv("PDP_SCOPE", "invoice_submit invoice_read"),
            timeout=_env_int("PDP_TIMEOUT", 30),
            retry_attempts=_env_int("PDP_RETRY_ATTEMPTS", 3),
            retry_delay=_env_int("PDP_RETRY_DELAY", 60),
            reconcile_interval=_env_int("PDP_RECONCILE_INTERVAL", 120),
            simulation_delay=_env_int("PDP_SIMULATION_DELAY", 30),
            simulation_error_rate=_env_int("PDP_SIMULATION_ERROR_RATE", 0),
            stale_after=_env_int("PDP_STALE_AFTER", 86400),
            claim_timeout=_env_int("PDP_CLAIM_TIMEOUT", 900),
            max_file_size=_env_int("PDP_MAX_FILE_SIZE", 10 * 1024 * 1024),
            email_notifications=_env_bool("PDP_EMAIL_NOTIFICATIONS", True),
            webhook_secret=os.getenv("PDP_WEBHOOK_SECRET") or None,
            db_path=os.getenv("PDP_DB_PATH", "db/pdp_state.db"),
            signing_key_id=os.getenv("PDP_SIGNING_KEY_ID") or None,
        )

    def with_mode(self, mode: str) -> "PDPSettings":
        return replace(self, mode=mode)
