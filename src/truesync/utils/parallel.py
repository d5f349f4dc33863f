"""Fork-join fan-out over a bounded thread pool."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")

DEFAULT_MAX_WORKERS = 32


def run_all(
    inputs: Sequence[T],
    worker: Callable[[T], R],
    *,
    max_workers: int = DEFAULT_MAX_WORKERS,
    name: str = "fanout",
) -> List[Optional[R]]:
    """Apply ``worker`` to every input concurrently and wait for all of them.

    Returns one slot per input, in input order. Each task writes only its own
    slot, so no locking is needed between tasks. A worker that raises is
    logged and leaves ``None`` in its slot; this call itself never fails
    because of a worker. There is no join timeout: workers bound their own
    runtime.
    """
    results: List[Optional[R]] = [None] * len(inputs)
    if not inputs:
        return results

    def task(index: int, item: T) -> None:
        try:
            results[index] = worker(item)
        except Exception as e:
            logger.warning("Worker failed", fanout=name, index=index, input=str(item), error=str(e))

    pool_size = max(1, min(len(inputs), max_workers))
    with ThreadPoolExecutor(max_workers=pool_size, thread_name_prefix=name) as pool:
        for index, item in enumerate(inputs):
            pool.submit(task, index, item)
    # leaving the with-block joins every worker

    return results
