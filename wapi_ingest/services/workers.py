"""
Bounded worker pool for media caching outside the request lifecycle.
"""
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, Optional, Set

from wapi_ingest.core.logging import get_logger

logger = get_logger(__name__)


class MediaWorkerPool:
    """Thread pool whose task failures are logged, never propagated to the caller."""

    def __init__(self, max_workers: int = 4, name: str = "media"):
        self.name = name
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=f"{name}-worker")
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()

    def submit(self, fn: Callable, *args, task: Optional[str] = None, **kwargs) -> Future:
        future = self._executor.submit(fn, *args, **kwargs)
        label = task or getattr(fn, "__name__", "task")
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(lambda done: self._finished(done, label))
        return future

    def _finished(self, future: Future, label: str) -> None:
        with self._lock:
            self._pending.discard(future)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.warning(
                "Background task failed",
                exc_info=(type(error), error, error.__traceback__),
                extra={"extra_data": {"pool": self.name, "task": label, "error": str(error)}}
            )

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every submitted task finished; False on timeout."""
        with self._lock:
            pending = set(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        if not_done:
            return False
        # Tasks may have submitted follow-up work while we waited
        return self.wait_idle(timeout)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
