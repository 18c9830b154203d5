"""
Flask application factory for the payment engine.
Fails fast on configuration errors in production.
"""

import logging

import sentry_sdk
from flask import Flask
from sentry_sdk.integrations.flask import FlaskIntegration
from werkzeug.middleware.proxy_fix import ProxyFix

from paygate.config import ConfigurationError, get_config
from paygate.config.validator import validate_configuration
from paygate.engine import get_engine, init_engine
from paygate.error_handlers import register_error_handlers
from paygate.extensions import db, init_extensions
from paygate.logging_config import setup_logging
from paygate.notifications.notification_service import CeleryNotificationDispatcher
from paygate.observability import init_metrics
from paygate.webhooks.routes import bp as webhooks_bp
from paygate.workers.celery_app import init_celery

logger = logging.getLogger(__name__)

_dispatcher = None


def setup_sentry(app: Flask) -> None:
    """Initialize Sentry error tracking"""
    sentry_dsn = app.config.get('SENTRY_DSN')
    if not sentry_dsn:
        return

    sentry_sdk.init(
        dsn=sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.1,
        environment=app.config.get('ENVIRONMENT'),
        release=app.config.get('APP_VERSION', '1.0.0'),
        send_default_pii=False,
    )
    logger.info("Sentry error tracking initialized")


def setup_proxy(app: Flask) -> None:
    """Trust X-Forwarded-For only from the configured number of proxy hops"""
    hops = app.config.get('TRUSTED_PROXY_HOPS', 0)
    if hops:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=hops)


def setup_notifications(app: Flask, celery) -> None:
    """Forward engine signals to the notification service through Celery."""
    global _dispatcher
    if not app.config.get('NOTIFICATIONS_DISPATCH_ENABLED'):
        return
    if _dispatcher is not None:
        _dispatcher.disconnect()
    _dispatcher = CeleryNotificationDispatcher(
        celery, app.config['NOTIFICATIONS_TASK_NAME']
    ).connect()
    logger.info("Notification dispatch enabled")


def create_app(config_name: str = None) -> Flask:
    app = Flask(__name__)
    app.config.from_object(get_config(config_name))

    setup_logging(app)

    if not validate_configuration(app):
        if app.config.get('ENVIRONMENT') == 'production':
            raise ConfigurationError("Invalid configuration, refusing to start")
        logger.warning("Continuing with configuration problems outside production")

    setup_sentry(app)
    setup_proxy(app)
    init_extensions(app)
    init_metrics(app)
    celery = init_celery(app)

    register_error_handlers(app)
    app.register_blueprint(webhooks_bp)

    init_engine(app)
    setup_notifications(app, celery)

    logger.info(
        f"{app.config['APP_NAME']} started",
        extra={"environment": app.config.get('ENVIRONMENT')},
    )
    return app


__all__ = ["create_app", "db", "get_engine"]
