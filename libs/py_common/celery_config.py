# libs/py_common/celery_config.py
from celery import Celery

from .config import settings


def create_celery_app(app_name: str) -> Celery:
    """Creates and configures a Celery application instance."""
    app = Celery(
        app_name,
        broker=settings.celery_broker_url,
        backend=settings.celery_result_backend_url,
        include=[]  # Services register their own task modules
    )

    app.conf.update(
        task_serializer='json',
        accept_content=['json'],
        result_serializer='json',
        timezone='UTC',
        enable_utc=True,
        task_acks_late=True,
        worker_prefetch_multiplier=1,
    )
    return app
