# pdp_core/hsm/__init__.py
from __future__ import annotations
import threading
from typing import Optional

from pdp_core.config import HSMSettings
from pdp_core.hsm.hsm_base import (
    SigningProvider, HSMError, KeyNotFound, KeyAlreadyExists, HSMConfigurationError, HSMUnavailable,
    UnsupportedAlgorithm,
)
from pdp_core.hsm.hsm_simulator import HSMSimulator
from pdp_core.hsm.hsm_remote import RemoteHSM
from pdp_core.logger import get_logger
from pdp_core.storage.providers.file_keystore import FileKeyStore

log = get_logger("PDP.HSM")

# providers reachable through the REST backend, per mode
REMOTE_PROVIDERS = {
    "hardware": {"universign"},
    "cloud": {"universign", "certigna"},
}
NOT_IMPLEMENTED = {
    "hardware": {"thales", "safenet", "utimaco"},
    "cloud": {"aws", "azure", "gcp"},
}


def hsm_factory(settings: Optional[HSMSettings] = None) -> SigningProvider:
    """
    mode:
      - "simulator" → encrypted local key files (development)
      - "hardware"  → network-attached HSM, provider from HSM_PROVIDER
      - "cloud"     → cloud signing service, provider from HSM_CLOUD_PROVIDER

    Every configuration problem raises HSMConfigurationError here, never later
    at signing time.
    """
    settings = settings or HSMSettings.from_env()
    mode = settings.mode
    log.info(f"[HSM] initializing mode={mode}")

    if mode == "simulator":
        return HSMSimulator(
            FileKeyStore(settings.simulator_storage),
            settings.simulator_encryption_key,
            default_key_size=settings.default_key_size,
        )

    if mode in REMOTE_PROVIDERS:
        provider = settings.provider if mode == "hardware" else settings.cloud_provider
        if not provider:
            raise HSMConfigurationError(f"{mode} HSM provider not configured")
        provider = provider.lower()
        if provider in NOT_IMPLEMENTED[mode]:
            raise HSMConfigurationError(f"{mode} HSM provider not yet implemented: {provider}")
        if provider not in REMOTE_PROVIDERS[mode]:
            raise HSMConfigurationError(f"unknown {mode} HSM provider: {provider}")
        return RemoteHSM(settings.remote_url, settings.api_key, provider=provider, timeout=settings.timeout)

    raise HSMConfigurationError(f"unknown HSM mode: {mode}")


class SigningProviderFactory:
    """
    Resolves settings into one shared SigningProvider, built on first use.

    Pipeline components receive the provider itself; this class only owns
    its construction. Tests use ``SigningProviderFactory.for_testing(fake)``.
    """

    def __init__(self, settings: Optional[HSMSettings] = None):
        self.settings = settings
        self._instance: Optional[SigningProvider] = None
        self._lock = threading.Lock()

    @classmethod
    def for_testing(cls, provider: SigningProvider) -> "SigningProviderFactory":
        factory = cls(HSMSettings())
        factory._instance = provider
        return factory

    def get(self) -> SigningProvider:
        with self._lock:
            if self._instance is None:
                self._instance = hsm_factory(self.settings)
            return self._instance

    def reset(self) -> None:
        with self._lock:
            self._instance = None


__all__ = [
    "SigningProvider",
    "SigningProviderFactory",
    "hsm_factory",
    "HSMSimulator",
    "RemoteHSM",
    "HSMError",
    "KeyNotFound",
    "KeyAlreadyExists",
    "HSMConfigurationError",
    "HSMUnavailable",
    "UnsupportedAlgorithm",
]
