"""Constants and tuning parameters for the review harvester.

Deployment-specific values (worker command, intervals, timeouts) live in
:mod:`review_harvester.config.settings`; the values here describe the
artifact contract and the source site and do not vary per deployment.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Batch artifacts
# ---------------------------------------------------------------------------

#: Suffix of page artifacts: ``{prefix}_page_{n}.json``.
PAGE_ARTIFACT_GLOB: str = "{prefix}_page_*.json"

#: Name of the metadata artifact: ``{prefix}_meta.json``.
META_ARTIFACT_NAME: str = "{prefix}_meta.json"

#: File the worker's stdout and stderr are appended to, inside the drop dir.
WORKER_LOG_NAME: str = "worker.log"

#: Records per page the worker writes; used to estimate ``total_batches``.
RECORDS_PER_BATCH: int = 50

# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

#: Author stored when the worker did not report one.
ANONYMOUS_AUTHOR: str = "Anonymous"

#: Prefix of content-derived record keys.
FALLBACK_KEY_PREFIX: str = "r_"

#: Column widths of the ``reviews`` table.
MAX_REVIEW_ID_LENGTH: int = 128
MAX_AUTHOR_LENGTH: int = 255
MAX_PUBLISHED_AT_LENGTH: int = 64

#: Width of ``scrape_tasks.phase``; worker-reported phases are cut to it.
MAX_PHASE_LENGTH: int = 30

# ---------------------------------------------------------------------------
# Query surface
# ---------------------------------------------------------------------------

#: Default page size of review listings.
DEFAULT_PAGE_SIZE: int = 50

#: Ratings at or above this count as positive.
POSITIVE_RATING_MIN: int = 4

#: Ratings at or below this (and above zero) count as negative.
NEGATIVE_RATING_MAX: int = 2

# ---------------------------------------------------------------------------
# Quick probe
# ---------------------------------------------------------------------------

#: Browser-like user agent sent by the probe; the listing page serves an
#: empty shell to unknown clients.
PROBE_USER_AGENT: str = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

#: Title fragments stripped from the page ``<title>`` to obtain the name.
TITLE_NOISE: tuple[str, ...] = (
    "— Яндекс Карты",
    "– Яндекс Карты",
    "- Яндекс Карты",
    "— Yandex Maps",
    "- Yandex Maps",
)

# ---------------------------------------------------------------------------
# Supervision
# ---------------------------------------------------------------------------

#: Delay between queuing a task and the supervisor picking it up.
DISPATCH_COUNTDOWN_SECONDS: int = 2

#: Celery queue that runs supervisor jobs.
SCRAPING_QUEUE: str = "scraping"

#: Headroom of the supervisor job's Celery time limits over its own
#: wall-clock budget, for the final drain and worker termination.
SUPERVISOR_TIME_LIMIT_MARGIN_SECONDS: int = 300

#: Reasons recorded when a task is taken away from its supervisor.
REASON_FORCED_RERUN: str = "superseded by forced re-run"
REASON_RETARGETED: str = "retargeted to {target_id}"
REASON_OPERATOR_CANCEL: str = "cancelled by operator"
REASON_SUPERVISOR_LOST: str = "supervisor lost"
