"""Review harvesting engine.

Drives an external scraping worker per target and merges the review batches
it writes into the database while it is still running.

Sub-modules:
- ``config``         artifact names, record constants and supervision reasons
- ``targets``        target id derivation from listing URLs
- ``probe``          lightweight httpx probe of a listing page
- ``launcher``       worker process start / liveness / termination
- ``scanner``        incremental discovery of batch artifacts
- ``ingestor``       idempotent, fenced merge of records
- ``result_store``   review persistence and aggregates
- ``task_store``     task persistence and compare-and-set status changes
- ``supervisor``     per-task poll loop
- ``controller``     task creation, forced re-runs, retargeting, cancel
- ``queries``        read-only views for the API
- ``tasks``          Celery tasks
"""
