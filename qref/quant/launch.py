import logging
import math
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Callable

__all__ = ["parallel_launch", "parallel_for"]

logger = logging.getLogger(__name__)


def _default_workers() -> int:
    value = os.environ.get("QREF_NUM_WORKERS", "1")
    try:
        workers = int(value)
    except ValueError:
        logger.warning("ignoring invalid QREF_NUM_WORKERS=%r", value)
        return 1
    return max(workers, 1)


class parallel_launch:
    r"""Launch configuration of the dispatch surface.

    Every dispatch entry point splits its elements (or output channels, or
    rows) into disjoint contiguous ranges and runs one task per range. This
    class controls how many worker threads run those tasks and how many
    elements a task gets at least. Results never depend on the configuration,
    only the wall time does.

    The defaults are one worker (serial execution), or the value of the
    ``QREF_NUM_WORKERS`` environment variable, and a grain of 65536 elements.

    Args:
        num_workers: number of worker threads, 1 runs the tasks inline
        grain: minimum number of elements per task

    Example:
        The configuration can be changed globally with the static
        ``configure`` method; or locally as a context manager:

        .. code-block:: python

            parallel_launch.configure(num_workers=8)
            with parallel_launch(num_workers=1):
                status = launch_requantize(acc, out, n, multiplier, shift)
    """

    num_workers = _default_workers()
    grain = 65536

    def __init__(self, num_workers: int | None = None, grain: int | None = None):
        self._check(num_workers, grain)
        self._enter_workers = num_workers
        self._enter_grain = grain

    @staticmethod
    def _check(num_workers: int | None, grain: int | None):
        if num_workers is not None and num_workers < 1:
            raise ValueError("invalid number of workers: {}".format(num_workers))
        if grain is not None and grain < 1:
            raise ValueError("invalid grain: {}".format(grain))

    @classmethod
    def configure(cls, num_workers: int | None = None, grain: int | None = None):
        """Globally sets the launch configuration; ``None`` keeps the current value.

        Args:
            num_workers: number of worker threads
            grain: minimum number of elements per task
        """
        cls._check(num_workers, grain)
        if num_workers is not None:
            cls.num_workers = num_workers
        if grain is not None:
            cls.grain = grain

    def __enter__(self):
        self._prev_workers = self.__class__.num_workers
        self._prev_grain = self.__class__.grain
        self.__class__.configure(self._enter_workers, self._enter_grain)
        return self

    def __exit__(self, type, value, trace):
        self.__class__.num_workers = self._prev_workers
        self.__class__.grain = self._prev_grain


def split_ranges(n: int, workers: int, grain: int) -> list[tuple[int, int]]:
    """Split ``[0, n)`` into at most ``workers`` contiguous ranges of at least ``grain``."""
    if n <= 0:
        return []
    chunk = max(grain, math.ceil(n / workers))
    return [(start, min(start + chunk, n)) for start in range(0, n, chunk)]


def parallel_for(n: int, fn: Callable[[int, int], None], grain: int | None = None):
    """
    Run ``fn(start, end)`` over disjoint ranges covering ``[0, n)``.

    Ranges run in no particular order; ``fn`` must only write locations
    owned by its own range. The first exception raised by a task propagates
    once all tasks have finished.

    Args:
        n: number of independent work items
        fn: the task body
        grain: minimum items per task (defaults to :attr:`parallel_launch.grain`)
    """
    workers = parallel_launch.num_workers
    ranges = split_ranges(n, workers, parallel_launch.grain if grain is None else grain)
    logger.debug("parallel_for: %d items in %d ranges", n, len(ranges))
    if workers == 1 or len(ranges) <= 1:
        for start, end in ranges:
            fn(start, end)
        return
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [pool.submit(fn, start, end) for start, end in ranges]
        for future in futures:
            future.result()
