"""Conflict-free batch scheduling for healing jobs.

Errors for the same repository never share a batch, so the jobs of one
batch can run concurrently without contending on a repository lease.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import TypeVar

from healclaw.core.dedup import repo_key_of

T = TypeVar("T")

UNKNOWN_REPO = "unknown"


def create_batches(
    reports: Sequence[T],
    batch_size: int,
    key: Callable[[T], str | None] = repo_key_of,
) -> list[list[T]]:
    """Partition reports into ordered, conflict-free batches.

    A new batch starts whenever the current one already holds the report's
    repository or has reached ``batch_size``. ``key`` extracts the
    repository key; it defaults to the report fields ``repo``/``project``.

    Example:
        repos [A, A, B] with batch_size 3 -> [[A], [A, B]]
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be at least 1, got {batch_size}")

    batches: list[list[T]] = []
    current: list[T] = []
    keys_in_current: set[str] = set()

    for report in reports:
        repo = key(report) or UNKNOWN_REPO

        if repo in keys_in_current or len(current) >= batch_size:
            if current:
                batches.append(current)
            current = [report]
            keys_in_current = {repo}
        else:
            current.append(report)
            keys_in_current.add(repo)

    if current:
        batches.append(current)

    return batches
