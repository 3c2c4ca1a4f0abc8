import pytest

from pdp_core.config import HSMSettings
from pdp_core.hsm import (
    HSMConfigurationError, HSMSimulator, RemoteHSM, SigningProviderFactory, hsm_factory,
)


def test_simulator_mode(tmp_path):
    provider = hsm_factory(HSMSettings(simulator_storage=str(tmp_path / "keys"),
                                       simulator_encryption_key="s"))
    assert isinstance(provider, HSMSimulator)
    assert (tmp_path / "keys").is_dir()


def test_simulator_without_secret_fails_at_construction(tmp_path):
    with pytest.raises(HSMConfigurationError):
        hsm_factory(HSMSettings(simulator_storage=str(tmp_path / "keys")))


@pytest.mark.parametrize("mode,field,provider", [
    ("hardware", "provider", "universign"),
    ("cloud", "cloud_provider", "universign"),
    ("cloud", "cloud_provider", "certigna"),
])
def test_remote_providers(mode, field, provider):
    settings = HSMSettings(mode=mode, remote_url="https://hsm.example.test", api_key="k", **{field: provider})
    hsm = hsm_factory(settings)
    assert isinstance(hsm, RemoteHSM)
    assert hsm.provider == provider


@pytest.mark.parametrize("mode,field,provider", [
    ("hardware", "provider", "thales"),
    ("hardware", "provider", "safenet"),
    ("hardware", "provider", "utimaco"),
    ("cloud", "cloud_provider", "aws"),
    ("cloud", "cloud_provider", "azure"),
    ("cloud", "cloud_provider", "gcp"),
])
def test_not_implemented_providers(mode, field, provider):
    settings = HSMSettings(mode=mode, remote_url="https://hsm.example.test", api_key="k", **{field: provider})
    with pytest.raises(HSMConfigurationError, match="not yet implemented"):
        hsm_factory(settings)


def test_unknown_or_missing_provider():
    with pytest.raises(HSMConfigurationError, match="unknown"):
        hsm_factory(HSMSettings(mode="cloud", cloud_provider="nowhere"))
    with pytest.raises(HSMConfigurationError, match="not configured"):
        hsm_factory(HSMSettings(mode="hardware"))
    with pytest.raises(HSMConfigurationError, match="unknown HSM mode"):
        hsm_factory(HSMSettings(mode="quantum"))


def test_remote_requires_credentials():
    with pytest.raises(HSMConfigurationError):
        hsm_factory(HSMSettings(mode="cloud", cloud_provider="certigna", remote_url="https://hsm.example.test"))


def test_factory_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("HSM_MODE", "simulator")
    monkeypatch.setenv("HSM_SIMULATOR_KEY_STORAGE", str(tmp_path / "env-keys"))
    monkeypatch.setenv("HSM_SIMULATOR_ENCRYPTION_KEY", "env-secret")
    assert isinstance(hsm_factory(), HSMSimulator)


def test_provider_factory_builds_once(tmp_path):
    factory = SigningProviderFactory(HSMSettings(simulator_storage=str(tmp_path), simulator_encryption_key="s"))
    first = factory.get()
    assert factory.get() is first
    factory.reset()
    assert factory.get() is not first


def test_provider_factory_for_testing(simulator):
    factory = SigningProviderFactory.for_testing(simulator)
    assert factory.get() is simulator
