from celery import Celery, signals

from tokenledger.core.config import settings
from tokenledger.core.logging import setup_logging

celery_app = Celery(
    "tokenledger",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["tokenledger.workers.tasks.reservation_sweep"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_default_queue="default",
    task_queues={
        "default": {"exchange": "default", "routing_key": "default"},
        "ledger": {"exchange": "ledger", "routing_key": "ledger"},
    },
    beat_schedule={
        "reservation-sweep": {
            "task": "tasks.reservation_sweep",
            "schedule": float(settings.RESERVATION_SWEEP_INTERVAL_SECONDS),
            "options": {"queue": "ledger"},
        },
    },
)


@signals.setup_logging.connect
def _configure_worker_logging(**kwargs):
    setup_logging()
