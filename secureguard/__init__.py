# secureguard/__init__.py
import logging

from flask import Flask
from config import Config          # <- import the Config class directly
from .db import db                 # <- the SQLAlchemy instance
from .routes import bp as main_bp  # <- management API + tracking blueprint
from .cli import register_commands


def create_app(config_class=Config):
    app = Flask(__name__)

    # Load configuration (SECRET_KEY, DATABASE_URL, tracking settings, etc.)
    app.config.from_object(config_class)

    logging.basicConfig(
        level=app.config.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Initialize database extension
    db.init_app(app)

    # Register main blueprint (routes) and CLI commands
    app.register_blueprint(main_bp)
    register_commands(app)

    return app
