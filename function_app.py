"""Azure Functions entry point exposing the Flask app through the WSGI adapter."""
from __future__ import annotations

import os

import azure.functions as func

from onboard_dispatch.web import create_app

flask_app = create_app(os.environ.get("PROVISION_CONFIG"))

# SecurityKey is enforced by the Flask layer; function keys are left to the platform.
app = func.WsgiFunctionApp(app=flask_app.wsgi_app, http_auth_level=func.AuthLevel.ANONYMOUS)
