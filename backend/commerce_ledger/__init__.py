# backend/commerce_ledger/__init__.py
import logging

from flask import Flask, jsonify

from .config import Config
from .extensions import db, migrate
from .errors import LedgerError
from .validation import ValidationError



def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    # Overrides must land before extensions read the config (engines are built in init_app)
    if config_overrides:
        app.config.update(config_overrides)

    app.logger.setLevel(getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.products import products_bp
    from .routes.sales import sales_bp
    from .routes.returns import returns_bp
    from .routes.store_credit import store_credit_bp
    from .routes.imports import imports_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(products_bp)
    app.register_blueprint(sales_bp)
    app.register_blueprint(returns_bp)
    app.register_blueprint(store_credit_bp)
    app.register_blueprint(imports_bp)

    @app.errorhandler(LedgerError)
    def handle_ledger_error(e: LedgerError):
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(ValidationError)
    def handle_validation_error(e: ValidationError):
        return jsonify({"error": str(e)}), 400

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    from .services.maintenance_service import start_reservation_sweeper
    start_reservation_sweeper(app)

    return app
