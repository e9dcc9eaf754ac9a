# avr/__init__.py
# AVR donations: Flask app factory
# Goals:
# - gateway client, plan cache, store and notifier built once here and injected
# - JSON error shape for the API, request-id aware logging
# - production refuses to boot without gateway credentials

from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, Optional, Type, Union
from uuid import uuid4

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException
from werkzeug.utils import import_string

# never override real env vars
load_dotenv(override=False)

ConfigLike = Union[str, Type[Any]]

from avr.extensions import cors, csrf, db, mail, migrate  # noqa: E402


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _env_mode(app: Optional[Flask] = None) -> str:
    """
    Determine environment mode.
    Priority:
      1) app.config["ENV"] (if present and meaningful)
      2) APP_ENV / ENV / FLASK_ENV env vars
      3) default "development"
    """
    if app is not None:
        v = str(app.config.get("ENV") or "").strip().lower()
        if v and v not in {"?", "base"}:
            return v

    for key in ("APP_ENV", "ENV", "FLASK_ENV"):
        val = (os.getenv(key) or "").strip().lower()
        if val:
            if val == "prod":
                return "production"
            if val == "dev":
                return "development"
            if val == "test":
                return "testing"
            return val

    return "development"


def _resolve_config(target: Optional[ConfigLike]) -> ConfigLike:
    """
    Choose config class/module path.
    - If explicitly provided, respect it.
    - Else if FLASK_CONFIG is set, use it.
    - Else pick by environment name.
    """
    if target is not None:
        return target

    explicit = (os.getenv("FLASK_CONFIG") or "").strip()
    if explicit:
        return explicit

    from avr.config import CONFIG_BY_NAME, DevelopmentConfig

    return CONFIG_BY_NAME.get(_env_mode(None), DevelopmentConfig)


def _json_error(message: str, status: int, **extra: Any):
    payload: Dict[str, Any] = {"ok": False, "error": {"code": int(status), "message": str(message)}}
    rid = extra.pop("request_id", None)
    if rid:
        payload["error"]["request_id"] = rid
    if extra:
        payload["error"].update(extra)

    resp = jsonify(payload)
    resp.status_code = int(status)
    return resp


# -----------------------------------------------------------------------------
# Logging with request_id
# -----------------------------------------------------------------------------
class _RequestIDFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        try:
            record.request_id = getattr(g, "request_id", "-")
        except RuntimeError:
            # outside an app/request context
            record.request_id = "-"
        return True


def _configure_logging(app: Flask) -> None:
    fmt = "%(asctime)s [%(levelname)s] %(name)s [rid=%(request_id)s]: %(message)s"
    root = logging.getLogger()

    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(fmt))
        handler.addFilter(_RequestIDFilter())
        root.addHandler(handler)
    else:
        for h in root.handlers:
            if not any(isinstance(f, _RequestIDFilter) for f in h.filters):
                h.addFilter(_RequestIDFilter())

    root.setLevel(str(app.config.get("LOG_LEVEL", "INFO")).upper())
    logging.getLogger("werkzeug").setLevel(str(app.config.get("WERKZEUG_LOG_LEVEL", "WARNING")).upper())
    app.logger.info("Loaded config: ENV=%s DEBUG=%s", app.config.get("ENV", "?"), app.debug)


# -----------------------------------------------------------------------------
# Extensions / lifecycle / errors
# -----------------------------------------------------------------------------
def _init_cors(app: Flask) -> None:
    raw = str(app.config.get("CORS_ORIGINS") or "*").strip()
    origins: Union[str, list] = [o.strip() for o in raw.split(",") if o.strip()] if "," in raw else raw
    cors.init_app(
        app,
        resources={r"/api/*": {"origins": origins}},
        expose_headers=["X-Request-ID"],
        allow_headers=["Content-Type", "X-Request-ID"],
        methods=["GET", "POST", "OPTIONS"],
    )


def _maybe_create_sqlite_tables(app: Flask) -> None:
    uri = (app.config.get("SQLALCHEMY_DATABASE_URI") or "").strip()
    if not uri.startswith("sqlite"):
        return
    if app.config.get("AUTO_CREATE_SQLITE", True) is not True:
        return
    with app.app_context():
        db.create_all()


def _register_request_lifecycle(app: Flask) -> None:
    @app.before_request
    def _bootstrap_request():
        g.request_id = request.headers.get("X-Request-ID") or uuid4().hex
        g._start_ts = time.perf_counter()

    @app.after_request
    def _attach_request_headers(resp):
        resp.headers["X-Request-ID"] = getattr(g, "request_id", "-")
        start = getattr(g, "_start_ts", None)
        if start:
            resp.headers["X-Response-Time-ms"] = str(int((time.perf_counter() - start) * 1000))
        return resp


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(HTTPException)
    def _http_err(err: HTTPException):
        return _json_error(err.description or err.name, err.code or 500, request_id=getattr(g, "request_id", "-"))

    @app.errorhandler(Exception)
    def _uncaught(err: Exception):
        app.logger.exception("Unhandled error")
        return _json_error("Internal Server Error", 500, request_id=getattr(g, "request_id", "-"))


def _register_health_endpoints(app: Flask) -> None:
    @app.get("/healthz")
    def _healthz():
        gateway = app.extensions["donations"]["gateway"]
        return {
            "status": "ok",
            "env": app.config.get("ENV", "unknown"),
            "gateway": type(gateway).__name__,
            "request_id": getattr(g, "request_id", "-"),
        }


def _init_donations(app: Flask, gateway: Any = None, notifier: Any = None) -> None:
    from avr.services.donation_store import DonationStore
    from avr.services.donations import DonationService
    from avr.services.helcim import build_gateway_client
    from avr.services.plan_cache import PaymentPlanCache
    from avr.services.receipts import ReceiptNotifier
    from avr.services.webhooks import WebhookReceiver

    env = _env_mode(app)
    if gateway is None:
        gateway = build_gateway_client(app.config)
    if notifier is None:
        notifier = ReceiptNotifier.from_config(app.config)

    service = DonationService(
        DonationStore(),
        gateway,
        PaymentPlanCache(),
        notifier,
        currency=str(app.config.get("HELCIM_CURRENCY") or "USD"),
        receipt_config=app.config,
    )

    secret = str(app.config.get("HELCIM_WEBHOOK_VERIFIER_TOKEN") or "").strip()
    allow_unsigned = env == "development" and bool(app.config.get("HELCIM_ALLOW_UNSIGNED_WEBHOOKS"))
    if not secret:
        app.logger.warning(
            "HELCIM_WEBHOOK_VERIFIER_TOKEN not set; webhooks will be %s",
            "accepted UNSIGNED (development bypass)" if allow_unsigned else "rejected",
        )

    app.extensions["donations"] = {
        "service": service,
        "gateway": gateway,
        "plan_cache": service.plan_cache,
        "webhooks": WebhookReceiver(service, secret=secret, allow_unsigned=allow_unsigned),
    }


# -----------------------------------------------------------------------------
# App Factory
# -----------------------------------------------------------------------------
def create_app(config_class: Optional[ConfigLike] = None, *, gateway: Any = None, notifier: Any = None) -> Flask:
    app = Flask(__name__)

    # ---- Config loading
    cfg = _resolve_config(config_class)
    app.config.from_object(cfg)
    env = _env_mode(app)
    app.config["ENV"] = env

    cfg_obj = import_string(cfg) if isinstance(cfg, str) else cfg
    init_hook = getattr(cfg_obj, "init_app", None)
    if callable(init_hook):
        init_hook(app)

    app.config.setdefault("JSON_SORT_KEYS", False)
    app.url_map.strict_slashes = False

    # ---- Logging
    _configure_logging(app)

    # ---- Core extensions
    _init_cors(app)
    csrf.init_app(app)
    db.init_app(app)
    migrate.init_app(app, db, compare_type=True, render_as_batch=True)
    mail.init_app(app)

    import avr.models  # noqa: F401  (register tables before create_all)

    _maybe_create_sqlite_tables(app)

    # ---- Donation services (gateway credentials checked here, at boot)
    _init_donations(app, gateway=gateway, notifier=notifier)

    # ---- Request lifecycle / errors
    _register_request_lifecycle(app)
    _register_error_handlers(app)

    # ---- Blueprints + health
    from avr.blueprints.donations import bp as donations_bp

    app.register_blueprint(donations_bp, url_prefix="/api/donations")
    _register_health_endpoints(app)

    return app
