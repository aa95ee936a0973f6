"""Incremental discovery of batch artifacts in a worker's drop directory.

The worker writes ``{prefix}_page_{n}.json`` files (one per page of results)
and rewrites ``{prefix}_meta.json`` as it goes.  Polling the directory is the
only channel between worker and supervisor, so :meth:`BatchScanner.scan`
turns the directory into a list of :class:`Batch` messages: every page file
whose modification marker advanced past the one recorded in ``seen``.

The scanner never mutates ``seen``; the caller records ``batch.marker`` after
the batch is ingested, so a failed ingest is retried on the next poll.

A file that cannot be decoded is assumed to be mid-write.  It is skipped and
reported in :attr:`ScanResult.pending`, and because its marker is not
recorded it will be read again next time.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from review_harvester.harvester.config import META_ARTIFACT_NAME, PAGE_ARTIFACT_GLOB

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Batch:
    """One page artifact ready for ingestion."""

    name: str
    marker: int
    page: int
    records: list[dict[str, Any]]


@dataclass(frozen=True)
class MetaSnapshot:
    """Progress the worker reported in its meta artifact."""

    target_metadata: Optional[dict[str, Any]] = None
    expected_total: Optional[int] = None
    total_batches: Optional[int] = None
    is_complete: bool = False
    phase: Optional[str] = None


@dataclass
class ScanResult:
    batches: list[Batch] = field(default_factory=list)
    meta: Optional[MetaSnapshot] = None
    pending: list[str] = field(default_factory=list)


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _read_json(path: Path) -> Any:
    with open(path, encoding="utf-8") as fh:
        return json.load(fh)


def parse_meta(payload: Any) -> Optional[MetaSnapshot]:
    """Convert a decoded meta artifact into a :class:`MetaSnapshot`.

    ``total_expected`` is the worker's name for the expected record count;
    ``total`` and the organisation's ``review_count`` are accepted as
    fallbacks.  Returns None for payloads that are not objects.
    """
    if not isinstance(payload, dict):
        return None

    org = payload.get("organization")
    target_metadata: Optional[dict[str, Any]] = None
    if isinstance(org, dict):
        target_metadata = {
            "name": org.get("name"),
            "rating": org.get("rating"),
            "review_count": _as_int(org.get("review_count")),
        }

    expected = _as_int(payload.get("total_expected"))
    if expected is None:
        expected = _as_int(payload.get("total"))
    if expected is None and target_metadata is not None:
        expected = target_metadata["review_count"]

    phase = payload.get("phase")
    return MetaSnapshot(
        target_metadata=target_metadata,
        expected_total=expected,
        total_batches=_as_int(payload.get("total_pages")),
        is_complete=bool(payload.get("is_complete", False)),
        phase=str(phase) if phase else None,
    )


def extract_records(payload: Any) -> list[dict[str, Any]]:
    """Return the record dicts of a decoded page artifact."""
    if isinstance(payload, dict):
        payload = payload.get("reviews") or []
    if not isinstance(payload, list):
        return []
    return [item for item in payload if isinstance(item, dict)]


class BatchScanner:
    """Scan one drop directory for new or rewritten batch artifacts.

    Args:
        work_dir: Drop directory of the worker.
        prefix: Artifact prefix the worker was launched with.
    """

    def __init__(self, work_dir: str | Path, prefix: str) -> None:
        self.work_dir = Path(work_dir)
        self.prefix = prefix
        self._page_re = re.compile(rf"^{re.escape(prefix)}_page_(\d+)\.json$")

    @property
    def meta_path(self) -> Path:
        return self.work_dir / META_ARTIFACT_NAME.format(prefix=self.prefix)

    def _page_files(self) -> list[tuple[int, Path]]:
        pages: list[tuple[int, Path]] = []
        for path in self.work_dir.glob(PAGE_ARTIFACT_GLOB.format(prefix=self.prefix)):
            match = self._page_re.match(path.name)
            if match:
                pages.append((int(match.group(1)), path))
        pages.sort(key=lambda item: item[0])
        return pages

    def read_meta(self) -> Optional[MetaSnapshot]:
        """Read the meta artifact; None when absent or unreadable."""
        try:
            return parse_meta(_read_json(self.meta_path))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.debug("scanner: meta artifact not readable yet: %s", exc)
            return None

    def scan(self, seen: dict[str, int]) -> ScanResult:
        """Return batches whose marker advanced past ``seen`` plus the meta snapshot.

        Never raises for missing directories or malformed artifacts.
        """
        result = ScanResult()
        if not self.work_dir.is_dir():
            return result

        for page, path in self._page_files():
            try:
                marker = path.stat().st_mtime_ns
            except FileNotFoundError:
                continue
            if seen.get(path.name, -1) >= marker:
                continue
            try:
                payload = _read_json(path)
            except FileNotFoundError:
                continue
            except (OSError, ValueError) as exc:
                logger.debug("scanner: %s not decodable yet: %s", path.name, exc)
                result.pending.append(path.name)
                continue
            result.batches.append(
                Batch(name=path.name, marker=marker, page=page, records=extract_records(payload))
            )

        result.meta = self.read_meta()
        return result
