"""Lightweight HTTP probe of a target's listing page.

Run before a task is created to learn the target's name, rating and expected
review count without launching the worker.  The probe is advisory: every
failure (network, HTTP status, unparsable markup) is logged and reported as
``None`` so task creation proceeds with empty metadata.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import asdict, dataclass
from typing import Any, Optional

import httpx
from bs4 import BeautifulSoup, Tag

from review_harvester.harvester.config import PROBE_USER_AGENT, TITLE_NOISE
from review_harvester.harvester.targets import reviews_url

logger = logging.getLogger(__name__)

_REVIEWS_OF_RE = re.compile(r"^Отзывы о\s*[«\"](.+?)[»\"]", re.IGNORECASE)
_NUMBER_RE = re.compile(r"\d+(?:[.,]\d+)?")


@dataclass
class ProbeResult:
    """What the listing page reveals about a target."""

    name: Optional[str]
    rating: Optional[float]
    review_count: Optional[int]

    def as_metadata(self) -> dict[str, Any]:
        return asdict(self)


def _itemprop_value(soup: BeautifulSoup, prop: str) -> Optional[str]:
    """Return the ``content`` (or text) of the first element with *prop*."""
    tag = soup.find(attrs={"itemprop": prop})
    if not isinstance(tag, Tag):
        return None
    content = tag.get("content")
    if isinstance(content, str) and content.strip():
        return content.strip()
    text = tag.get_text(strip=True)
    return text or None


def _find_key(node: Any, key: str) -> Any:
    if isinstance(node, dict):
        value = node.get(key)
        if value is not None and not isinstance(value, (dict, list)):
            return value
        children = node.values()
    elif isinstance(node, list):
        children = node
    else:
        return None
    for child in children:
        found = _find_key(child, key)
        if found is not None:
            return found
    return None


def _json_ld_value(soup: BeautifulSoup, key: str) -> Optional[str]:
    for script in soup.find_all("script", type="application/ld+json"):
        try:
            data = json.loads(script.string or "")
        except ValueError:
            continue
        value = _find_key(data, key)
        if value is not None:
            return str(value)
    return None


def _to_float(raw: Optional[str]) -> Optional[float]:
    match = _NUMBER_RE.search(raw or "")
    if match is None:
        return None
    return float(match.group(0).replace(",", "."))


def _to_int(raw: Optional[str]) -> Optional[int]:
    digits = re.sub(r"\D", "", raw or "")
    return int(digits) if digits else None


def _clean_title(raw: str) -> Optional[str]:
    title = " ".join(raw.split())
    for noise in TITLE_NOISE:
        title = title.replace(noise, "")
    title = title.strip(" -–—|")
    match = _REVIEWS_OF_RE.match(title)
    if match:
        title = match.group(1)
    return title or None


def parse_listing(page: str) -> Optional[ProbeResult]:
    """Extract name, rating and review count from listing markup.

    Microdata (``itemprop``) wins over JSON-LD.  Returns None when none of
    the three could be found.
    """
    soup = BeautifulSoup(page, "html.parser")

    review_count = _to_int(
        _itemprop_value(soup, "reviewCount") or _json_ld_value(soup, "reviewCount")
    )
    rating = _to_float(
        _itemprop_value(soup, "ratingValue") or _json_ld_value(soup, "ratingValue")
    )
    name = _clean_title(soup.title.get_text()) if soup.title is not None else None

    if review_count is None and rating is None and name is None:
        return None
    return ProbeResult(name=name, rating=rating, review_count=review_count)


def probe_target(
    url: str,
    *,
    timeout: float | None = None,
    client: httpx.Client | None = None,
) -> Optional[ProbeResult]:
    """Fetch the reviews page of *url* and parse it.

    Args:
        url: Listing URL as submitted by the operator.
        timeout: Request timeout; ``settings.probe_timeout_seconds`` when omitted.
        client: Optional pre-configured client (tests inject one).

    Returns:
        A :class:`ProbeResult`, or None on any failure.
    """
    if timeout is None:
        from review_harvester.config.settings import get_settings  # noqa: PLC0415

        timeout = get_settings().probe_timeout_seconds

    target = reviews_url(url)
    headers = {
        "User-Agent": PROBE_USER_AGENT,
        "Accept-Language": "ru-RU,ru;q=0.9,en;q=0.8",
    }
    owns_client = client is None
    http = client or httpx.Client(follow_redirects=True, timeout=timeout)
    try:
        response = http.get(target, headers=headers)
        response.raise_for_status()
    except httpx.TimeoutException:
        logger.warning("probe: timeout fetching %s", target)
        return None
    except httpx.HTTPStatusError as exc:
        logger.warning("probe: HTTP %d from %s", exc.response.status_code, target)
        return None
    except httpx.RequestError as exc:
        logger.warning("probe: request error for %s: %s", target, exc)
        return None
    finally:
        if owns_client:
            http.close()

    result = parse_listing(response.text)
    if result is None:
        logger.info("probe: no metadata found on %s", target)
    return result
