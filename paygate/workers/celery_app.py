import os

from celery import Celery

celery = Celery(
    "paygate",
    broker=os.getenv("REDIS_URL"),
    backend=os.getenv("REDIS_URL"),
    include=["paygate.workers.payment_tasks"],
)

celery.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    beat_schedule={
        "sweep-expired-transactions": {
            "task": "paygate.sweep_expired_transactions",
            "schedule": float(os.getenv("EXPIRY_SWEEP_INTERVAL_SECONDS", 60)),
        },
    },
)


def init_celery(app):
    redis_url = app.config.get("REDIS_URL")
    if redis_url:
        celery.conf.update(broker_url=redis_url, result_backend=redis_url)
    celery.conf.update(task_always_eager=app.config.get("TESTING", False))

    class ContextTask(celery.Task):
        abstract = True

        def __call__(self, *args, **kwargs):
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery.Task = ContextTask
    return celery
