import logging
from concurrent.futures import (
    FIRST_EXCEPTION,
    ProcessPoolExecutor,
    ThreadPoolExecutor,
    wait,
)
from typing import Callable, Iterable, List

from pipeline_errors import ComputationError, PipelineError

log = logging.getLogger(__name__)


class WorkerPool:
    """
    Explicit worker pool for the embarrassingly parallel pipeline phases.

    Work units read immutable inputs and return independent results,
    which `map` hands back in input order for a single-threaded reduction.
    The batch orchestrator owns the lifecycle (start/shutdown, or use the
    pool as a context manager).

    With n_workers == 1 units run inline in the calling thread.
    """

    def __init__(self, n_workers: int = 1, kind: str = "thread"):
        if n_workers < 1:
            raise ValueError(f"n_workers must be >= 1, got {n_workers}")
        if kind not in ("thread", "process"):
            raise ValueError(f"kind must be 'thread' or 'process', got '{kind}'")
        self.n_workers = n_workers
        self.kind = kind
        self._executor = None

    @property
    def running(self) -> bool:
        return self._executor is not None

    def start(self) -> "WorkerPool":
        if self._executor is None and self.n_workers > 1:
            executor_cls = ThreadPoolExecutor if self.kind == "thread" else ProcessPoolExecutor
            self._executor = executor_cls(max_workers=self.n_workers)
            log.debug(f"  Started {self.kind} pool with {self.n_workers} workers")
        return self

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True, cancel_futures=True)
            self._executor = None
            log.debug("  Worker pool shut down")

    def __enter__(self) -> "WorkerPool":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    def map(self, fn: Callable, items: Iterable, stage: str = "parallel") -> List:
        """
        Apply fn to every item and return the results in input order.

        The first failing unit cancels the units not yet started and is
        re-raised as ComputationError (PipelineErrors keep their type).

        Args:
            fn: Picklable callable for process pools (module-level function).
            items: Work units.
            stage: Stage name reported on failure.

        Returns:
            list: fn(item) for each item.
        """
        items = list(items)
        if self._executor is None or len(items) <= 1:
            return [self._run_inline(fn, i, item, stage) for i, item in enumerate(items)]

        futures = [self._executor.submit(fn, item) for item in items]
        done, pending = wait(futures, return_when=FIRST_EXCEPTION)
        for index, future in enumerate(futures):
            if future in done and future.exception() is not None:
                for other in pending:
                    other.cancel()
                _reraise(future.exception(), index, stage)
        return [future.result() for future in futures]

    @staticmethod
    def _run_inline(fn: Callable, index: int, item, stage: str):
        try:
            return fn(item)
        except Exception as e:
            _reraise(e, index, stage)


def _reraise(error: BaseException, index: int, stage: str) -> None:
    if isinstance(error, PipelineError):
        raise error
    log.error(f"  Unit {index} of stage '{stage}' failed: {error}")
    raise ComputationError(
        f"work unit {index} failed: {type(error).__name__}: {error}", stage=stage
    ) from error
