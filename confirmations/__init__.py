# confirmations/__init__.py
import logging
from typing import Optional

from flask import Flask
from flask_cors import CORS

from .config import Config
from .extensions import services
from .storage import RecordStore

CORS_METHODS = ["GET", "POST", "PUT", "DELETE", "OPTIONS"]
CORS_HEADERS = ["Content-Type", "Authorization"]


def create_app(overrides: Optional[dict] = None, store: Optional[RecordStore] = None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    logging.basicConfig(level=app.config["LOG_LEVEL"])

    CORS(app, origins="*", send_wildcard=True, methods=CORS_METHODS, allow_headers=CORS_HEADERS)
    services.init_app(app, store=store)

    from .app import bp as main_bp
    app.register_blueprint(main_bp)

    return app
