"""
app/__init__.py — Flask application factory.

Pattern: create_app(config_name) creates and returns a configured Flask app.
         Nothing is initialised at import time, which enables:
           - Multiple isolated test app instances, each with its own cache
           - `alembic` to import the models without starting the server

Responsibilities:
  1. Load configuration from config_by_name[config_name]
  2. Configure the `settleup` logger from LOG_LEVEL
  3. Initialise extensions (SQLAlchemy, Marshmallow) via init_app()
  4. Build the per-app OptimizationCache and store it on app.extensions
  5. Register all route blueprints under /api/v1
  6. Register global error handlers (AppError → JSON, Exception → 500)
  7. Register a custom JSON provider to serialise Decimal as string
"""

from __future__ import annotations

import logging
import traceback
from decimal import Decimal

from flask import Flask, jsonify, request
from flask.json.provider import DefaultJSONProvider
from marshmallow import ValidationError

from settleup.config import config_by_name, validate_production_config


# ── Custom JSON provider ───────────────────────────────────────────────────
# Monetary amounts are serialised as strings to preserve precision.

class DecimalJSONProvider(DefaultJSONProvider):
    """
    Extends Flask's default JSON provider to serialise Decimal as str.

    Example: Decimal("10.50") → "10.50" (not 10.5 or 10.500000001)
    """

    sort_keys = False

    def default(self, o):
        if isinstance(o, Decimal):
            return str(o)
        return super().default(o)


# ── Application factory ────────────────────────────────────────────────────

def create_app(config_name: str = "development") -> Flask:
    """
    Creates and returns a configured Flask application instance.

    Args:
        config_name: One of "development", "testing", "production".
                     Resolved via config_by_name in config.py.
                     Defaults to "development".
    """
    app = Flask(__name__)
    app.json_provider_class = DecimalJSONProvider
    app.json = DecimalJSONProvider(app)

    # ── Configuration ──────────────────────────────────────────────────────
    config_class = config_by_name.get(config_name, config_by_name["development"])
    app.config.from_object(config_class)

    if config_name == "production":
        validate_production_config(app)  # raises ValueError if misconfigured

    _configure_logging(app)

    # ── Extensions ─────────────────────────────────────────────────────────
    # Import here (not at module top) to avoid circular imports.
    from settleup.app.extensions import db, ma
    db.init_app(app)
    ma.init_app(app)

    # ── Model registration ─────────────────────────────────────────────────
    # Populates SQLAlchemy's MetaData for create_all() and Alembic.
    with app.app_context():
        from settleup.app.models import settlement_record  # noqa: F401

    _register_cache(app)

    # ── Blueprints ─────────────────────────────────────────────────────────
    _register_blueprints(app)

    # ── Error handlers ─────────────────────────────────────────────────────
    _register_error_handlers(app)
    _register_cors(app)

    return app


def _configure_logging(app: Flask) -> None:
    """
    Sets the level of the `settleup` package logger.

    Handlers are left to the host (gunicorn, flask run, pytest caplog);
    when none is configured, records propagate to the root logger.
    """
    level = app.config.get("LOG_LEVEL", "INFO")
    logging.getLogger("settleup").setLevel(level)
    app.logger.setLevel(level)


def _register_cache(app: Flask) -> None:
    """
    Builds this app's OptimizationCache.

    OPTIMIZATION_CACHE_ENABLED=false swaps in a NullCacheStore, so every
    request recomputes. Routes pass the cache to the services explicitly.
    """
    from settleup.app.extensions import CACHE_EXTENSION_KEY
    from settleup.app.services.cache_service import (
        InMemoryCacheStore,
        NullCacheStore,
        OptimizationCache,
    )

    if app.config.get("OPTIMIZATION_CACHE_ENABLED", True):
        store = InMemoryCacheStore()
    else:
        store = NullCacheStore()

    app.extensions[CACHE_EXTENSION_KEY] = OptimizationCache(
        store=store,
        ttl_seconds=app.config["OPTIMIZATION_CACHE_TTL"],
    )


def _register_blueprints(app: Flask) -> None:
    """
    Registers all route blueprints under the /api/v1 prefix.

    The url_prefix is set here so individual route files only specify
    the path relative to their resource.
    """
    from settleup.app.routes.optimization import optimization_bp
    from settleup.app.routes.settlement_records import settlement_records_bp

    app.register_blueprint(optimization_bp, url_prefix="/api/v1/groups")
    # settlement_records_bp owns BOTH /groups/<id>/settlement-records AND
    # /settlement-records/<id>/..., so it is registered at /api/v1.
    app.register_blueprint(settlement_records_bp, url_prefix="/api/v1")


def _first_validation_message(messages, path: tuple = ()) -> tuple[str | None, str]:
    """
    Walks marshmallow's nested messages and returns (dotted field, message)
    for the first leaf error.

    Example: {"debts": {0: {"amount": ["..."]}}} → ("debts.0.amount", "...")
    """
    if isinstance(messages, dict):
        for key, value in messages.items():
            next_path = path if key == "_schema" else path + (str(key),)
            return _first_validation_message(value, next_path)
    if isinstance(messages, list) and messages:
        first = messages[0]
        if isinstance(first, (dict, list)):
            return _first_validation_message(first, path)
        return (".".join(path) or None), str(first)
    return (".".join(path) or None), "Invalid input."


def _register_error_handlers(app: Flask) -> None:
    """
    Registers global error handlers.

    Handlers:
      AppError        → structured JSON error envelope with the correct HTTP status
      ValidationError → marshmallow schema errors formatted as MISSING_FIELD /
                        INVALID_FIELD / registered-code responses (400)
      Exception       → generic INTERNAL_ERROR (500); full traceback logged

    Stack traces never leave the server.
    """
    from settleup.app.errors import AppError, ErrorCode

    known_codes = {
        value for name, value in vars(ErrorCode).items() if not name.startswith("_")
    }

    @app.errorhandler(AppError)
    def handle_app_error(error: AppError):
        """
        Converts an AppError raised anywhere in the request lifecycle
        into the standard error envelope. Routes never catch AppError.
        """
        if error.http_status >= 500:
            app.logger.error("%r", error)
        return jsonify(error.to_dict()), error.http_status

    @app.errorhandler(ValidationError)
    def handle_validation_error(error: ValidationError):
        """
        Returns the FIRST schema error only ("one error, not many").

        If the message is itself a registered ErrorCode (e.g.
        INVALID_AMOUNT_PRECISION) it becomes the code.
        """
        field, raw_message = _first_validation_message(error.messages)

        if raw_message in known_codes:
            code = raw_message
            message = _code_to_message(code)
        elif raw_message.startswith("Missing data for required field"):
            code = ErrorCode.MISSING_FIELD
            message = raw_message
        else:
            code = ErrorCode.INVALID_FIELD
            message = raw_message

        response_body = {"error": {"code": code, "message": message}}
        if field is not None:
            response_body["error"]["field"] = field

        return jsonify(response_body), 400

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        """
        Catches all unhandled exceptions and returns a generic 500 response.
        HTTP errors raised by Flask itself (404, 405) keep their status.
        """
        from werkzeug.exceptions import HTTPException

        if isinstance(error, HTTPException):
            return jsonify({
                "error": {
                    "code": error.name.upper().replace(" ", "_"),
                    "message": error.description,
                }
            }), error.code

        app.logger.error(
            "Unhandled exception: %s\n%s",
            str(error),
            traceback.format_exc(),
        )
        return jsonify({
            "error": {
                "code": ErrorCode.INTERNAL_ERROR,
                "message": "An unexpected error occurred. Please try again later.",
            }
        }), 500


def _register_cors(app: Flask) -> None:
    """
    Adds CORS headers for browser-based local development.

    Enabled when DEBUG or TESTING is true so a dashboard served from another
    local port can call the API.
    """

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allow_all = bool(app.config.get("DEBUG") or app.config.get("TESTING"))

        if allow_all:
            response.headers["Access-Control-Allow-Origin"] = origin if origin else "*"
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Methods"] = "GET, POST, PATCH, OPTIONS"
            response.headers["Access-Control-Allow-Headers"] = "Content-Type"

        return response


def _code_to_message(code: str) -> str:
    """
    Returns a human-readable default message for a known error code.
    Used when a ValidationError message IS the error code constant itself.
    """
    _messages = {
        "INVALID_AMOUNT_PRECISION": "Amount has more decimal places than any currency allows.",
        "INVALID_STRATEGY": "strategy must be 'greedy', 'minCashFlow' or 'friendPreference'.",
        "INVALID_CURRENCY_POLICY": (
            "currency_policy must be 'reference', 'payer_preferred' or 'original_debts'."
        ),
        "INVALID_STATUS": "The status value is not valid.",
    }
    return _messages.get(code, "Invalid input.")
