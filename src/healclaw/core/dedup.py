"""Error report deduplication for HealClaw.

Collapses a batch of raw error reports into at most one actionable report
per repository, keeping the most recent one.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any, TypeVar

from loguru import logger

T = TypeVar("T")

# Field names that may carry the repository key, in lookup order
REPO_KEY_FIELDS = ("repo_key", "repo", "project")


def _field(item: Any, name: str) -> Any:
    if isinstance(item, Mapping):
        return item.get(name)
    return getattr(item, name, None)


def repo_key_of(item: Any) -> str | None:
    """Get the repository key of a report, or None if it is unkeyable."""
    for name in REPO_KEY_FIELDS:
        value = _field(item, name)
        if value:
            return str(value)
    return None


def _timestamp_of(item: Any) -> datetime | float:
    value = _field(item, "timestamp")
    if value is None:
        return datetime.min
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return datetime.min
    return value


def _is_newer(candidate: Any, current: Any) -> bool:
    new_ts = _timestamp_of(candidate)
    old_ts = _timestamp_of(current)
    try:
        return new_ts > old_ts
    except TypeError:
        # Mixed numeric/datetime timestamps: compare as epoch seconds
        def as_epoch(ts: datetime | float) -> float:
            if isinstance(ts, datetime):
                return float("-inf") if ts == datetime.min else ts.timestamp()
            return float(ts)

        return as_epoch(new_ts) > as_epoch(old_ts)


def group_by_repository(reports: Iterable[T]) -> list[T]:
    """Keep only the latest report per repository.

    Reports without a repository key are dropped. For equal timestamps the
    first report seen wins.

    Args:
        reports: ErrorReport objects or mappings with ``repo``/``project``
            and ``timestamp`` fields

    Returns:
        At most one report per distinct repository key
    """
    latest: dict[str, T] = {}
    dropped = 0

    for report in reports:
        key = repo_key_of(report)
        if key is None:
            dropped += 1
            continue

        current = latest.get(key)
        if current is None or _is_newer(report, current):
            latest[key] = report

    if dropped:
        logger.debug(f"Dropped {dropped} report(s) without a repository key")

    return list(latest.values())
