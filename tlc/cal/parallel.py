"""
Fork-join parallel processing over pixel, line and frame axes.

Every heavy stage of the pipeline is a data-parallel map over an index
range whose items are mutually independent. WorkerPool partitions the
range into one contiguous chunk per worker and runs the chunks on a
fixed-size thread pool; numpy, PyWavelets and FFmpeg release the GIL
inside their kernels, so threads scale without copying the large matrices.

Work functions receive a step-1 ``range`` and may slice their output
with ``chunk.start:chunk.stop``.
"""

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


class WorkerPool:
    """
    Fixed-size worker pool for fork-join operations.

    The worker threads are started on the first parallel call and live
    until :meth:`close`. Falls back to serial processing with a single
    worker.

    Example:
        >>> with WorkerPool(4) as pool:
        ...     def work(chunk):
        ...         out[chunk.start:chunk.stop] = heavy(data[chunk.start:chunk.stop])
        ...     pool.for_each(work, len(data))
    """

    def __init__(self, workers: Optional[int] = None):
        """
        Initialize pool.

        Args:
            workers: Number of workers. If None, uses the CPU count.
        """
        if workers is None:
            workers = os.cpu_count() or 1
        if workers < 1:
            raise ValueError(f"Worker count must be positive, got {workers}")
        self._size = workers
        self._executor: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()
        self._closed = False

    @property
    def size(self) -> int:
        """Number of workers."""
        return self._size

    @property
    def is_parallel(self) -> bool:
        """Check if running in parallel mode."""
        return self._size > 1

    def distribute_indices(self, total_count: int, worker: int) -> range:
        """
        Get the contiguous block of indices assigned to one worker.

        Args:
            total_count: Total number of items to distribute
            worker: Worker index in [0, size)

        Returns:
            Range of indices for this worker to process

        Example:
            >>> # With 4 workers and 10 pixels:
            >>> # Worker 0 gets range(0, 3), worker 3 gets range(8, 10)
            >>> indices = pool.distribute_indices(10, 0)
        """
        chunk_size = total_count // self._size
        remainder = total_count % self._size

        # First 'remainder' workers take one extra item
        if worker < remainder:
            start = worker * (chunk_size + 1)
            end = start + chunk_size + 1
        else:
            start = remainder * (chunk_size + 1) + (worker - remainder) * chunk_size
            end = start + chunk_size

        return range(start, end)

    def chunks(self, total_count: int) -> List[range]:
        """Non-empty index chunks, one per worker at most."""
        chunks = [self.distribute_indices(total_count, w) for w in range(self._size)]
        return [c for c in chunks if len(c) > 0]

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._closed:
                raise RuntimeError("WorkerPool is closed")
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self._size,
                                                    thread_name_prefix="tlc-worker")
                logger.debug("Started %d worker threads", self._size)
            return self._executor

    def map_chunks(self, func: Callable[[range], T], total_count: int) -> List[T]:
        """
        Run ``func`` on every chunk of ``range(total_count)`` and join.

        Must not be called from inside a work function of the same pool.

        Args:
            func: Function taking an index range -> result
            total_count: Number of items

        Returns:
            Results in chunk order. The first worker exception is re-raised
            after all chunks have finished.
        """
        chunks = self.chunks(total_count)
        if len(chunks) <= 1:
            return [func(c) for c in chunks]

        futures = [self._get_executor().submit(func, c) for c in chunks]
        errors = [f.exception() for f in futures]
        for error in errors:
            if error is not None:
                raise error
        return [f.result() for f in futures]

    def for_each(self, func: Callable[[range], None], total_count: int) -> None:
        """Like :meth:`map_chunks` for functions that write their output in place."""
        self.map_chunks(func, total_count)

    def close(self) -> None:
        """Stop the worker threads; the pool cannot be used afterwards."""
        with self._lock:
            self._closed = True
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)

    def __enter__(self) -> 'WorkerPool':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __repr__(self) -> str:
        mode = "parallel" if self.is_parallel else "serial"
        return f"<WorkerPool workers={self._size} mode={mode}>"
