"""Flask-powered HTTP endpoint for the provisioning dispatcher."""
from __future__ import annotations

import hmac
import os
from pathlib import Path
from typing import Any, Dict, Optional

from flask import Flask, g, has_request_context, jsonify, request

from .config import AppConfig, ConfigurationError, load_config
from .dispatcher import STATUS_FAILED, Dispatcher
from .models import ProvisioningMetadata, StepName, StepStatus

SECURITY_HEADER = "SecurityKey"


def create_app(
    config_path: Optional[Path | str] = None,
    config: Optional[AppConfig] = None,
    dispatcher: Optional[Dispatcher] = None,
) -> Flask:
    """Create and configure the Flask application."""

    app = Flask(__name__)
    app.config["CONFIG_PATH"] = Path(config_path) if config_path else None
    app.config["JSON_SORT_KEYS"] = False
    if config is not None:
        app.config["_APP_CONFIG"] = config
    if dispatcher is not None:
        app.config["_DISPATCHER"] = dispatcher

    register_routes(app)
    return app


def register_routes(app: Flask) -> None:
    """Attach the API routes to the provided Flask app."""

    @app.get("/api/health")
    def api_health() -> Any:
        try:
            config = _load_app_config(app)
        except ConfigurationError as exc:
            return jsonify({"status": "error", "message": str(exc)}), 500
        return jsonify(
            {
                "status": "ok",
                "graph": config.graph.has_credentials,
                "connectwise": config.connectwise.has_credentials,
                "exchange": config.exchange.has_credentials,
                "licensing": config.licensing.enabled,
            }
        )

    @app.post("/api/provision")
    @app.post("/api/dispatcher")
    def api_provision() -> Any:
        try:
            config = _load_app_config(app)
        except ConfigurationError as exc:
            app.logger.error("Configuration error: %s", exc)
            return jsonify(_failure_payload(f"Configuration error: {exc}")), 500

        if not _security_key_matches(config, request.headers.get(SECURITY_HEADER)):
            app.logger.warning("Rejected provisioning request from %s: invalid security key.", request.remote_addr)
            return jsonify(_failure_payload("Invalid or missing security key.")), 401

        dispatcher = _get_dispatcher(app, config)
        response = dispatcher.dispatch_raw(request.get_data(cache=False))
        return jsonify(response.to_dict()), response.http_status


def _security_key_matches(config: AppConfig, supplied: Optional[str]) -> bool:
    expected = config.security.key
    if not expected:
        return True
    return hmac.compare_digest((supplied or "").encode("utf-8"), expected.encode("utf-8"))


def _failure_payload(message: str) -> Dict[str, Any]:
    metadata = ProvisioningMetadata()
    metadata.status[StepName.VALIDATION] = StepStatus.FAILED
    metadata.errors.append(message)
    return {
        "status": STATUS_FAILED,
        "message": message,
        "ticketId": "",
        "upn": None,
        "metadata": metadata.to_dict(),
        "errors": [message],
    }


def _get_dispatcher(app: Flask, config: AppConfig) -> Dispatcher:
    dispatcher = app.config.get("_DISPATCHER")
    if dispatcher is not None:
        return dispatcher
    return Dispatcher(config, logger=app.logger)


def _load_app_config(app: Flask) -> AppConfig:
    preset = app.config.get("_APP_CONFIG")
    if preset is not None:
        return preset
    if has_request_context():
        cached = getattr(g, "_app_config", None)
        if cached is None:
            cached = load_config(app.config.get("CONFIG_PATH"))
            g._app_config = cached
        return cached
    return load_config(app.config.get("CONFIG_PATH"))


def main() -> None:
    """Run the development server."""

    app = create_app(os.environ.get("PROVISION_CONFIG"))
    app.run(
        host=os.environ.get("PROVISION_WEB_HOST", "0.0.0.0"),
        port=int(os.environ.get("PROVISION_WEB_PORT", "5000")),
        debug=os.environ.get("PROVISION_WEB_DEBUG") == "1",
    )


if __name__ == "__main__":
    main()
