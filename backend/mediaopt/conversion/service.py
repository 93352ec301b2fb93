"""Background conversion queue with per-unit task tracking and parallel execution."""
import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional

from mediaopt.config import MAX_WORKERS
from mediaopt.conversion.capabilities import get_detector
from mediaopt.conversion.models import ConversionRequest, ConversionTask, TaskStatus
from mediaopt.conversion.pipeline import ConversionPipeline, ConversionUnit, plan_request

logger = logging.getLogger("mediaopt.service")

# Finished tasks kept for status lookups; older ones are dropped first
MAX_TASK_HISTORY = 1000
FINISHED = (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


class ConversionService:
    """Runs conversions off the request thread.

    Each task covers exactly one (asset_id, format, size_name) unit. Submitting a unit that
    is already queued or running returns the in-flight future instead of queueing it twice.
    """

    def __init__(
        self,
        pipeline: ConversionPipeline,
        tracker=None,
        library=None,
        max_workers: int = MAX_WORKERS,
        max_history: int = MAX_TASK_HISTORY,
    ):
        self.pipeline = pipeline
        self.tracker = tracker
        self.library = library
        self.max_history = max_history
        self._tasks: dict[str, ConversionTask] = {}
        self._in_flight: dict[tuple, tuple[ConversionTask, Future]] = {}
        self._latest: dict[tuple, ConversionTask] = {}
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers)
        logger.info("ConversionService initialized with max_workers=%s", max_workers)

    def get_task(self, task_id: str) -> Optional[ConversionTask]:
        with self._lock:
            return self._tasks.get(task_id)

    def get_task_for(self, key: tuple) -> Optional[ConversionTask]:
        """Most recent task created for an (asset_id, format, size_name) key."""
        with self._lock:
            return self._latest.get(key)

    def in_flight(self, key: tuple) -> bool:
        with self._lock:
            return key in self._in_flight

    def submit(self, request: ConversionRequest) -> dict[tuple, Future]:
        """Queue every planned unit of a request. Returns key -> future resolving to its ConversionTask."""
        futures = {}
        for unit in plan_request(request, self.pipeline.selector()):
            futures[unit.key] = self.submit_unit(unit)
        if not futures:
            logger.info("Nothing to convert for asset %s (formats %s)", request.asset_id, ", ".join(request.requested_formats))
        return futures

    def submit_unit(self, unit: ConversionUnit) -> Future:
        with self._lock:
            existing = self._in_flight.get(unit.key)
            if existing is not None:
                logger.debug("Coalescing duplicate request for %s", unit.key)
                return existing[1]
            task = ConversionTask(str(uuid.uuid4()), unit.asset_id, unit.format, unit.size_name)
            self._tasks[task.task_id] = task
            self._latest[unit.key] = task
            future = self._executor.submit(self._run, unit, task)
            self._in_flight[unit.key] = (task, future)
            self._prune()
        future.add_done_callback(lambda _f, key=unit.key: self._release(key))
        return future

    def _prune(self) -> None:
        """Drop the oldest finished tasks once the history is over its cap. Caller holds the lock."""
        excess = len(self._tasks) - self.max_history
        if excess <= 0:
            return
        stale = [tid for tid, t in self._tasks.items() if t.status in FINISHED][:excess]
        for task_id in stale:
            task = self._tasks.pop(task_id)
            key = (task.asset_id, task.format, task.size_name)
            if self._latest.get(key) is task:
                del self._latest[key]

    def _release(self, key: tuple) -> None:
        with self._lock:
            self._in_flight.pop(key, None)

    def _run(self, unit: ConversionUnit, task: ConversionTask) -> ConversionTask:
        task.status = TaskStatus.CONVERTING
        try:
            outcome = self.pipeline.convert(unit.source_path, unit.destination_path, unit.format, unit.options)
            if not outcome.success:
                task.status = TaskStatus.FAILED
                task.error = outcome.error
                task.retryable = outcome.retryable
                return task
            task.input_size = outcome.original_bytes
            task.output_size = outcome.converted_bytes
            task.output_path = outcome.destination_path
            task.animation_lost = outcome.animation_lost
            if self.tracker is not None:
                self.tracker.record(unit.asset_id, unit.format, unit.size_name, outcome.original_bytes, outcome.converted_bytes)
            if self.library is not None:
                self.library.set_file(unit.asset_id, "original", unit.size_name, unit.source_path, outcome.original_bytes)
                self.library.set_file(unit.asset_id, unit.format, unit.size_name, outcome.destination_path, outcome.converted_bytes)
            task.status = TaskStatus.COMPLETED
        except Exception as e:
            logger.exception("Conversion task %s failed for %s: %s", task.task_id, unit.key, e)
            task.status = TaskStatus.FAILED
            task.error = str(e)
        return task

    def cancel_pending(self, asset_id: Optional[int] = None) -> int:
        """Cancel queued tasks that have not started. Running encodes are left alone."""
        cancelled = 0
        with self._lock:
            entries = [(k, v) for k, v in self._in_flight.items() if asset_id is None or k[0] == asset_id]
        for key, (task, future) in entries:
            if future.cancel():
                task.status = TaskStatus.CANCELLED
                cancelled += 1
        if cancelled:
            logger.info("Cancelled %s queued conversion task(s)", cancelled)
        return cancelled

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


# Singleton
_conversion_service: Optional[ConversionService] = None


def get_conversion_service() -> ConversionService:
    global _conversion_service
    if _conversion_service is None:
        from mediaopt.library import get_library
        from mediaopt.tracker import get_tracker

        _conversion_service = ConversionService(ConversionPipeline(get_detector()), get_tracker(), get_library())
    return _conversion_service
