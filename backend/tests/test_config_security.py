"""
Security config guard tests.

Validates that production/staging environments fail fast when the token
signing secret is unset, a placeholder or too short, or when the database DSN
disables TLS, while development stays permissive.
"""
from __future__ import annotations

import importlib

import pytest

STRONG_SECRET = "prod-signing-secret-0123456789abcdef"


def _guard():
    from backend.web import config as cfg

    importlib.reload(cfg)
    return cfg.ensure_secure_config_on_startup


def test_dev_allows_placeholder_secret(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("EXCELLENCE_ENV", "dev")
    monkeypatch.setenv("JWT_SECRET", "CHANGE_ME_DEV_ONLY")
    _guard()()


@pytest.mark.parametrize("secret", ["", "CHANGE_ME_PLEASE_CHANGE_ME_PLEASE_CHANGE_ME", "short-secret"])
def test_prod_rejects_weak_jwt_secret(monkeypatch: pytest.MonkeyPatch, secret):
    monkeypatch.setenv("EXCELLENCE_ENV", "prod")
    monkeypatch.setenv("JWT_SECRET", secret)
    with pytest.raises(SystemExit):
        _guard()()


def test_prod_rejects_placeholder_elevation_secret(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("EXCELLENCE_ENV", "production")
    monkeypatch.setenv("JWT_SECRET", STRONG_SECRET)
    monkeypatch.setenv("ADMIN_SECRET_KEY", "CHANGE_ME_ADMIN")
    with pytest.raises(SystemExit):
        _guard()()


def test_prod_rejects_disabled_tls(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("EXCELLENCE_ENV", "staging")
    monkeypatch.setenv("JWT_SECRET", STRONG_SECRET)
    monkeypatch.delenv("ADMIN_SECRET_KEY", raising=False)
    monkeypatch.delenv("CLERGY_SECRET_KEY", raising=False)
    monkeypatch.setenv("DATABASE_URL", "postgresql://app:pw@db.example.com:5432/app?sslmode=disable")
    with pytest.raises(SystemExit):
        _guard()()


def test_prod_accepts_strong_configuration(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("EXCELLENCE_ENV", "prod")
    monkeypatch.setenv("JWT_SECRET", STRONG_SECRET)
    monkeypatch.setenv("ADMIN_SECRET_KEY", "real-admin-elevation-secret")
    monkeypatch.setenv("CLERGY_SECRET_KEY", "real-clergy-elevation-secret")
    monkeypatch.setenv("DATABASE_URL", "postgresql://app:pw@db.example.com:5432/app?sslmode=require")
    monkeypatch.delenv("CONTENT_DATABASE_URL", raising=False)
    monkeypatch.setenv("CONTENT_STORE", "db")
    _guard()()


@pytest.mark.parametrize("store", [None, "memory", "bogus"])
def test_prod_requires_db_content_store(monkeypatch: pytest.MonkeyPatch, store):
    monkeypatch.setenv("EXCELLENCE_ENV", "prod")
    monkeypatch.setenv("JWT_SECRET", STRONG_SECRET)
    monkeypatch.delenv("ADMIN_SECRET_KEY", raising=False)
    monkeypatch.delenv("CLERGY_SECRET_KEY", raising=False)
    monkeypatch.setenv("DATABASE_URL", "postgresql://app:pw@db.example.com:5432/app?sslmode=require")
    if store is None:
        monkeypatch.delenv("CONTENT_STORE", raising=False)
    else:
        monkeypatch.setenv("CONTENT_STORE", store)
    with pytest.raises(SystemExit, match="CONTENT_STORE"):
        _guard()()


def test_dev_keeps_in_memory_store(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("EXCELLENCE_ENV", "dev")
    monkeypatch.delenv("CONTENT_STORE", raising=False)
    _guard()()
