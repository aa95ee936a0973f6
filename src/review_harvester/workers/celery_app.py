"""Celery application for Review Harvester.

Configures the broker, result backend, serialization and task routing from
``Settings``.  Supervisor jobs run on the dedicated ``scraping`` queue; the
periodic refresh and the stale-task reaper run on the default queue.

Usage (starting a scraping worker)::

    celery -A review_harvester.workers.celery_app worker -Q scraping,celery --loglevel=info

Usage (starting the Beat scheduler)::

    celery -A review_harvester.workers.celery_app beat --loglevel=info
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import setup_logging, worker_process_init
from dotenv import load_dotenv

_logger = logging.getLogger(__name__)

load_dotenv()

from review_harvester.config.settings import get_settings  # noqa: E402

settings = get_settings()

#: The global Celery application instance.
celery_app = Celery(
    "review_harvester",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "review_harvester.harvester.tasks",
    ],
)

# ---------------------------------------------------------------------------
# Core configuration
# ---------------------------------------------------------------------------

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # A supervisor job is a single attempt: redelivering it after a worker
    # crash would race a second worker process against the first.
    task_acks_late=False,
    # Supervisor jobs block a worker slot for up to an hour.
    worker_prefetch_multiplier=1,
    result_expires=86_400,
    task_routes={
        "review_harvester.harvester.tasks.supervise_scrape_task": {
            "queue": "scraping",
        },
        "review_harvester.harvester.tasks.request_scrape_task": {
            "queue": "celery",
        },
        "review_harvester.harvester.tasks.retarget_task": {
            "queue": "celery",
        },
        "review_harvester.harvester.tasks.cancel_scrape_task": {
            "queue": "celery",
        },
    },
    beat_schedule_filename="celerybeat-schedule",
)

from review_harvester.workers.beat_schedule import beat_schedule  # noqa: E402

celery_app.conf.beat_schedule = beat_schedule


# ---------------------------------------------------------------------------
# Logging: route Celery's own loggers through structlog
# ---------------------------------------------------------------------------
@setup_logging.connect
def _configure_worker_logging(**kwargs: object) -> None:  # noqa: ARG001
    """Replace Celery's logging setup with the application's structlog config."""
    from review_harvester.core.logging_config import configure_logging  # noqa: PLC0415

    configure_logging(settings.log_level)


# ---------------------------------------------------------------------------
# Engine disposal on fork
# ---------------------------------------------------------------------------
@worker_process_init.connect
def _dispose_engine_on_fork(**kwargs: object) -> None:  # noqa: ARG001
    """Drop pooled connections inherited from the parent after Celery forks.

    Sockets opened before ``fork()`` must not be shared between processes;
    disposing without closing lets each child open its own.
    """
    from review_harvester.core import database as _db  # noqa: PLC0415

    _db.engine.dispose(close=False)
