from __future__ import annotations

from typing import Optional

from flask import Flask, jsonify
from pydantic import ValidationError
from werkzeug.exceptions import HTTPException

from raffle.errors import RaffleError

from .config import load_settings
from .db import engine
from .models import Base
from .routes.config import bp as config_bp
from .routes.health import bp as health_bp
from .routes.raffle import bp as raffle_bp
from .services.raffle import RaffleService, build_service


def create_app(service: Optional[RaffleService] = None) -> Flask:
    settings = load_settings()
    app = Flask(__name__)
    app.config["SECRET_KEY"] = settings.flask.secret_key
    Base.metadata.create_all(engine)

    app.extensions["raffle"] = service or build_service(settings.raffle, logger=app.logger)
    if not settings.oracle_api_key:
        app.logger.warning("ORACLE_API_KEY is not set; /raffle/fulfill will reject every call.")

    app.register_blueprint(health_bp)
    app.register_blueprint(raffle_bp, url_prefix="/raffle")
    app.register_blueprint(config_bp)

    @app.errorhandler(RaffleError)
    def handle_raffle_error(exc: RaffleError):
        app.logger.info("Raffle operation rejected: %s", exc)
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(ValidationError)
    def handle_validation_error(exc: ValidationError):
        details = exc.errors(include_url=False, include_context=False)
        return jsonify({"error": "invalid_request", "details": details}), 400

    @app.errorhandler(Exception)
    def handle_error(exc: Exception):
        if isinstance(exc, HTTPException):
            return exc
        app.logger.exception("Unhandled error: %s", exc)
        return jsonify({"error": str(exc)}), 500

    return app
