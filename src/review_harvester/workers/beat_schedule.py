"""Celery Beat periodic task schedule for Review Harvester.

This module is imported by ``celery_app.py`` and applied via
``celery_app.conf.beat_schedule``.

Schedule overview:

+-----------------------+---------------------------+--------------------------------+
| Task name             | Schedule                  | Purpose                        |
+=======================+===========================+================================+
| refresh_known_targets | Every REFRESH_INTERVAL_   | Re-request a scrape of every   |
|                       | HOURS (default 6 h)       | known target (no force).       |
+-----------------------+---------------------------+--------------------------------+
| reap_stale_tasks      | Every 30 minutes          | Fail active tasks whose        |
|                       |                           | supervisor is gone.            |
+-----------------------+---------------------------+--------------------------------+
"""

from __future__ import annotations

from celery.schedules import crontab

from review_harvester.config.settings import get_settings

_refresh_hours = max(1, min(get_settings().refresh_interval_hours, 24))

#: Celery Beat schedule dict.  Applied to ``celery_app.conf.beat_schedule``
#: in ``celery_app.py``.
beat_schedule: dict[str, dict] = {  # type: ignore[type-arg]
    # ------------------------------------------------------------------
    # Periodic refresh of every known target
    # ------------------------------------------------------------------
    "refresh_known_targets": {
        "task": "review_harvester.harvester.tasks.refresh_known_targets",
        "schedule": crontab(minute=0, hour=f"*/{_refresh_hours}"),
        "options": {
            "queue": "celery",
            "expires": 3_600,  # discard if not started within 1 hour
        },
    },
    # ------------------------------------------------------------------
    # Stale task reaper, every 30 minutes
    # ------------------------------------------------------------------
    "reap_stale_tasks": {
        "task": "review_harvester.harvester.tasks.reap_stale_tasks",
        "schedule": crontab(minute="*/30"),
        "options": {
            "queue": "celery",
            "expires": 1_500,
        },
    },
}
