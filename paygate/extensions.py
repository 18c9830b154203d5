# paygate/extensions.py
"""
Flask extensions initialization module.
"""

import logging

import redis
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy

# Objects stay readable after commit; engine results outlive the request session.
db = SQLAlchemy(session_options={"expire_on_commit": False})
migrate = Migrate()
redis_client = None

logger = logging.getLogger(__name__)


def init_extensions(app):
    """Initialize database, migrations and the optional Redis connection."""
    db.init_app(app)
    logger.info("SQLAlchemy initialized")

    migrate.init_app(app, db)
    logger.info("Flask-Migrate initialized")

    init_redis(app)

    if app.config.get("ENVIRONMENT") in ("development", "testing"):
        with app.app_context():
            db.create_all()

    return app


def init_redis(app):
    """Initialize Redis for distributed locks. Optional outside production."""
    global redis_client
    redis_url = app.config.get("REDIS_URL")
    if not redis_url:
        redis_client = None
        logger.info("REDIS_URL not set, using process-local locks")
        return None

    try:
        redis_client = redis.from_url(
            redis_url,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
        )
        redis_client.ping()
        logger.info("Redis connection established")
    except redis.RedisError as e:
        logger.error(f"Failed to connect to Redis: {e}")
        redis_client = None
        if app.config.get("ENVIRONMENT") == "production":
            raise
    return redis_client


def get_redis():
    return redis_client
