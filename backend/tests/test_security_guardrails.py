import pytest

from core import config as config_module
from core.security import (
    VALID_ROLES,
    create_access_token,
    decode_access_token,
    hash_password,
    is_admin,
    plan_has_feature,
    verify_password,
)


def _reset_settings_cache():
    config_module.get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _clear_cache_after():
    yield
    _reset_settings_cache()


def test_non_local_debug_mode_is_blocked(monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.setenv("DEBUG", "true")
    monkeypatch.setenv("JWT_SECRET", "real-secret")
    _reset_settings_cache()

    with pytest.raises(ValueError, match="debug=true"):
        config_module.get_settings()


def test_non_local_default_secret_is_blocked(monkeypatch):
    monkeypatch.setenv("APP_ENV", "staging")
    monkeypatch.setenv("DEBUG", "false")
    monkeypatch.setenv("JWT_SECRET", config_module.DEFAULT_JWT_SECRET)
    _reset_settings_cache()

    with pytest.raises(ValueError, match="default JWT secret"):
        config_module.get_settings()


def test_local_allows_dev_defaults(monkeypatch):
    monkeypatch.setenv("APP_ENV", "local")
    monkeypatch.setenv("DEBUG", "false")
    monkeypatch.setenv("JWT_SECRET", config_module.DEFAULT_JWT_SECRET)
    _reset_settings_cache()

    settings = config_module.get_settings()
    assert settings.app_env == "local"


def test_access_token_round_trips_claims():
    token = create_access_token({"sub": "user-1", "org_id": "org-1", "role": "gerente"})
    payload = decode_access_token(token)
    assert payload["sub"] == "user-1"
    assert payload["org_id"] == "org-1"


def test_tampered_token_is_rejected():
    token = create_access_token({"sub": "user-1"})
    assert decode_access_token(token[:-2] + "xx") is None


def test_password_hash_round_trip():
    hashed = hash_password("s3nha-forte")
    assert hashed != "s3nha-forte"
    assert verify_password("s3nha-forte", hashed)
    assert not verify_password("outra", hashed)


def test_admin_roles():
    assert {"gerente", "operador"} < VALID_ROLES
    assert is_admin("admin_rede")
    assert is_admin("super_admin")
    assert not is_admin("gerente")
    assert not is_admin(None)


def test_plan_features():
    assert plan_has_feature("starter", "has_expiry_analytics")
    assert not plan_has_feature("starter", "has_risk_scoring")
    assert plan_has_feature("professional", "has_ml")
    assert plan_has_feature("Enterprise", "has_risk_scoring")
    assert not plan_has_feature(None, "has_ml")
