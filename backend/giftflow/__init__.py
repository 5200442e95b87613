# backend/giftflow/__init__.py
from flask import Flask

from .config import Config
from .extensions import db, migrate


def create_app(config_object=None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_object or Config)
    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Payment provider, marketplace client, notification dispatcher
    from .integrations import init_integrations
    init_integrations(app)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.checkout import checkout_bp
    from .routes.fulfillment import fulfillment_bp
    from .routes.webhooks import webhooks_bp
    from .routes.recovery import recovery_bp
    from .routes.security import security_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(checkout_bp)
    app.register_blueprint(fulfillment_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(recovery_bp)
    app.register_blueprint(security_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
