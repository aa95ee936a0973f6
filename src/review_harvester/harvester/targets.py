"""Target identity.

A target is a business listing on the review site.  Its id is the numeric
organisation id embedded in the listing URL, so every URL variant of one
listing (different slug, query string, ``/reviews/`` suffix) maps to the same
target and therefore to the same tasks and stored reviews.
"""

from __future__ import annotations

import re
import urllib.parse

from review_harvester.core.exceptions import InvalidTargetError

_ORG_PATH_RE = re.compile(r"/org/[^/]+/(\d+)")
_BARE_ID_RE = re.compile(r"^\d+$")


def extract_target_id(reference: str) -> str:
    """Return the target id of a listing URL or bare numeric id.

    Raises:
        InvalidTargetError: When *reference* names no recognisable listing.
    """
    candidate = (reference or "").strip()
    if _BARE_ID_RE.match(candidate):
        return candidate
    path = urllib.parse.urlsplit(candidate).path
    match = _ORG_PATH_RE.search(path)
    if match is None:
        raise InvalidTargetError(reference)
    return match.group(1)


def reviews_url(reference: str) -> str:
    """Return the canonical ``.../reviews/`` page of a listing URL."""
    parts = urllib.parse.urlsplit(reference.strip())
    path = parts.path.rstrip("/")
    if path.endswith("/reviews"):
        path = path[: -len("/reviews")]
    return urllib.parse.urlunsplit((parts.scheme, parts.netloc, f"{path}/reviews/", "", ""))
