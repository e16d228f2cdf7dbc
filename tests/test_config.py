"""Tests for environment configuration."""
import pytest

from storefront.config import DEFAULT_MOMO_ENDPOINT, load_settings
from storefront.exceptions import ConfigurationError

ENV = {
    "JWT_SECRET_KEY": "jwt",
    "MOMO_PARTNER_CODE": "MOMO",
    "MOMO_ACCESS_KEY": "access",
    "MOMO_SECRET_KEY": "secret",
}


@pytest.fixture
def env(monkeypatch):
    for name in ["DATABASE_URL", "MOMO_ENDPOINT", "MOMO_TIMEOUT", "MOMO_IPN_URL"]:
        monkeypatch.delenv(name, raising=False)
    for name, value in ENV.items():
        monkeypatch.setenv(name, value)
    return monkeypatch


def test_load_settings_defaults(env):
    settings = load_settings()

    assert settings.momo.endpoint == DEFAULT_MOMO_ENDPOINT
    assert settings.momo.secret_key == "secret"
    assert settings.momo.timeout == 10.0
    assert settings.jwt_algorithm == "HS256"
    assert settings.database_url.startswith("postgresql://")


def test_load_settings_overrides(env):
    env.setenv("MOMO_TIMEOUT", "3.5")
    env.setenv("MOMO_IPN_URL", "https://shop.test/ipn")

    settings = load_settings(database_url="sqlite://")

    assert settings.momo.timeout == 3.5
    assert settings.momo.ipn_url == "https://shop.test/ipn"
    assert settings.database_url == "sqlite://"


@pytest.mark.parametrize("missing", ["MOMO_SECRET_KEY", "MOMO_ACCESS_KEY", "MOMO_PARTNER_CODE", "JWT_SECRET_KEY"])
def test_missing_credentials_fail_fast(env, missing):
    env.delenv(missing)

    with pytest.raises(ConfigurationError) as exc_info:
        load_settings()

    assert missing in str(exc_info.value)


def test_empty_secret_fails_fast(env):
    env.setenv("MOMO_SECRET_KEY", "")

    with pytest.raises(ConfigurationError):
        load_settings()
