"""Bounded fan-out of per-agency work."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import Any, TypeVar

from backend.core.config import settings

R = TypeVar("R")


def for_each_agency(
    rows: Sequence[dict[str, Any]],
    work: Callable[[dict[str, Any]], R],
    max_workers: int | None = None,
) -> list[R]:
    """Apply ``work`` to every agency row with at most ``max_workers`` threads.

    Results come back in input order. ``work`` is expected to turn agency-level
    failures into result values; anything it raises (``JobFatalError``)
    propagates to the caller once the pool has drained.
    """
    if not rows:
        return []
    workers = max(1, min(max_workers or settings.JOB_MAX_WORKERS, len(rows)))
    if workers == 1:
        return [work(row) for row in rows]
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="agency") as pool:
        return list(pool.map(work, rows))
