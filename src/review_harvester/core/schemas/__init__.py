"""Pydantic schemas for request/response validation.

Sub-modules:
    scraping: ScrapeRequest, RetargetRequest, ScrapeTaskRead, ReviewRead,
               ReviewPage, ReviewStatistics, TargetStatusRead
"""

from __future__ import annotations
