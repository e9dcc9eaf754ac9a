# avr/config/config.py
# Canonical AVR donations configuration (env-first, production-safe)

from __future__ import annotations

import os
from typing import Optional


# ----------------------------
# Env helpers
# ----------------------------
_TRUTHY = {"1", "true", "yes", "on", "y"}
_FALSY = {"0", "false", "no", "off", "n"}


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(name)
    if v is None:
        return default
    s = str(v).strip()
    return s if s else default


def _bool(name: str, default: bool = False) -> bool:
    v = _env(name)
    if v is None:
        return default
    s = v.strip().lower()
    if s in _TRUTHY:
        return True
    if s in _FALSY:
        return False
    return default


def _int(name: str, default: int) -> int:
    v = _env(name)
    if v is None:
        return default
    try:
        return int(str(v).strip())
    except ValueError:
        return default


def _clean_base_url(v: Optional[str]) -> str:
    return (v or "").strip().rstrip("/")


# ----------------------------
# Config classes
# ----------------------------
class BaseConfig:
    """
    Env-first config:
    - every gateway/mail setting can be overridden via environment variables
    - safe defaults for local dev (simulated gateway, no real mail)
    """

    ENV = (_env("APP_ENV") or _env("ENV") or _env("FLASK_ENV") or "base").strip().lower()

    DEBUG = _bool("FLASK_DEBUG", False)
    TESTING = _bool("TESTING", False)
    LOG_LEVEL = _env("LOG_LEVEL", "INFO")

    # Security
    SECRET_KEY = _env("SECRET_KEY", "dev-change-me")

    # SQLAlchemy
    SQLALCHEMY_DATABASE_URI = _env("SQLALCHEMY_DATABASE_URI", "sqlite:///avr-dev.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}
    AUTO_CREATE_SQLITE = True

    # ---- Helcim gateway ----
    HELCIM_PRIVATE_API_KEY = _env("HELCIM_PRIVATE_API_KEY", "")
    HELCIM_WEBHOOK_VERIFIER_TOKEN = _env("HELCIM_WEBHOOK_VERIFIER_TOKEN", "")
    HELCIM_CURRENCY = (_env("HELCIM_CURRENCY", "USD") or "USD").upper()
    HELCIM_LIVE_TESTING = _bool("HELCIM_LIVE_TESTING", False)
    HELCIM_ALLOW_UNSIGNED_WEBHOOKS = _bool("HELCIM_ALLOW_UNSIGNED_WEBHOOKS", False)
    HELCIM_API_BASE_URL = _clean_base_url(_env("HELCIM_API_BASE_URL", "https://api.helcim.com/v2"))
    HELCIM_TIMEOUT = _int("HELCIM_TIMEOUT", 30)
    HELCIM_READ_RETRIES = _int("HELCIM_READ_RETRIES", 2)

    # ---- Organization (receipts) ----
    ORGANIZATION_NAME = _env("ORGANIZATION_NAME", "American Veterans Rebuilding")
    ORGANIZATION_EIN = _env("ORGANIZATION_EIN", "")
    ORGANIZATION_ADDRESS = _env("ORGANIZATION_ADDRESS", "")

    # ---- Mail (Flask-Mail) ----
    EMAIL_ENABLED = _bool("EMAIL_ENABLED", False)
    MAIL_SERVER = _env("MAIL_SERVER", "localhost")
    MAIL_PORT = _int("MAIL_PORT", 587)
    MAIL_USE_TLS = _bool("MAIL_USE_TLS", True)
    MAIL_USE_SSL = _bool("MAIL_USE_SSL", False)
    MAIL_USERNAME = _env("MAIL_USERNAME")
    MAIL_PASSWORD = _env("MAIL_PASSWORD")
    DEFAULT_MAIL_SENDER = _env("DEFAULT_MAIL_SENDER", "donations@avrnpo.org")
    MAIL_DEFAULT_SENDER = DEFAULT_MAIL_SENDER

    # ---- CORS ----
    CORS_ORIGINS = _env("CORS_ORIGINS", "*")

    @classmethod
    def init_app(cls, app) -> None:
        """
        Optional hook for factory boot hardening.
        Called from create_app() after app.config.from_object(...)
        """
        uri = str(app.config.get("SQLALCHEMY_DATABASE_URI") or "")

        # SQLite tuning (requests may share the engine across threads)
        if uri.startswith("sqlite:"):
            opts = dict(app.config.get("SQLALCHEMY_ENGINE_OPTIONS") or {})
            connect_args = dict(opts.get("connect_args") or {})
            connect_args.setdefault("check_same_thread", False)
            opts["connect_args"] = connect_args
            opts.setdefault("pool_pre_ping", True)
            app.config["SQLALCHEMY_ENGINE_OPTIONS"] = opts


class DevelopmentConfig(BaseConfig):
    ENV = "development"
    DEBUG = True

    SQLALCHEMY_DATABASE_URI = _env("SQLALCHEMY_DATABASE_URI", "sqlite:///avr-dev.db")


class TestingConfig(BaseConfig):
    ENV = "testing"
    TESTING = True
    DEBUG = False

    SECRET_KEY = "testing-secret"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    WTF_CSRF_ENABLED = False

    HELCIM_PRIVATE_API_KEY = ""
    HELCIM_WEBHOOK_VERIFIER_TOKEN = "test-webhook-secret"
    HELCIM_CURRENCY = "USD"
    HELCIM_LIVE_TESTING = False
    HELCIM_ALLOW_UNSIGNED_WEBHOOKS = False

    EMAIL_ENABLED = True
    MAIL_SUPPRESS_SEND = True
    ORGANIZATION_EIN = "12-3456789"
    ORGANIZATION_ADDRESS = "PO Box 1, Anytown, USA"


class ProductionConfig(BaseConfig):
    ENV = "production"
    DEBUG = False

    EMAIL_ENABLED = _bool("EMAIL_ENABLED", True)

    @classmethod
    def init_app(cls, app) -> None:
        super().init_app(app)

        # ---- Production guardrails (fail fast) ----
        sk = app.config.get("SECRET_KEY")
        if not sk or sk == "dev-change-me":
            raise RuntimeError("SECRET_KEY must be set to a strong random value in production.")

        if not (app.config.get("HELCIM_PRIVATE_API_KEY") or "").strip():
            raise RuntimeError("HELCIM_PRIVATE_API_KEY must be set in production.")

        if not (app.config.get("HELCIM_WEBHOOK_VERIFIER_TOKEN") or "").strip():
            raise RuntimeError("HELCIM_WEBHOOK_VERIFIER_TOKEN must be set in production.")

        if app.config.get("HELCIM_ALLOW_UNSIGNED_WEBHOOKS"):
            raise RuntimeError("HELCIM_ALLOW_UNSIGNED_WEBHOOKS cannot be enabled in production.")

        if _bool("FLASK_DEBUG", False):
            raise RuntimeError("FLASK_DEBUG must be 0 in production.")
