"""Configuration package for Review Harvester.

Re-exports the settings entry points so that callers can write::

    from review_harvester.config import get_settings
"""

from __future__ import annotations

from review_harvester.config.settings import Settings, get_settings

__all__ = [
    "Settings",
    "get_settings",
]
