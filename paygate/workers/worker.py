"""
Celery entry point:

    celery -A paygate.workers.worker worker -l info
    celery -A paygate.workers.worker beat -l info
"""

from dotenv import load_dotenv

load_dotenv()

from paygate import create_app  # noqa: E402
from paygate.workers.celery_app import celery  # noqa: E402

app = create_app()

__all__ = ["app", "celery"]
