"""
In-process background job queue.

Work is grouped into named queues (e.g. "ai_generation", "default"), each
backed by its own thread pool so slow generation calls never starve cheap
housekeeping such as attachment purges.

Delivery is at-least-once from the caller's point of view: nothing
deduplicates enqueues, so the same upload may be processed twice (for example
after a "redo"). Handlers must tolerate that.
"""

import copy
import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Set

logger = logging.getLogger(__name__)

DEFAULT_QUEUE = "default"

TaskHandler = Callable[[Dict[str, Any]], Any]


class UnknownTaskError(LookupError):
    """Raised when enqueueing a task type that has no registered handler."""


@dataclass(slots=True)
class _Registration:
    handler: TaskHandler
    queue: str


class JobQueue:
    """
    Named-queue task runner over thread pools.

    Set `eager=True` to run handlers inline in the caller's thread; the returned
    future is already resolved.
    """

    def __init__(
        self,
        eager: bool = False,
        workers: Optional[Dict[str, int]] = None,
    ) -> None:
        self.eager = eager
        self._workers = workers or {}
        self._registry: Dict[str, _Registration] = {}
        self._executors: Dict[str, ThreadPoolExecutor] = {}
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()

    def register(self, task_type: str, handler: TaskHandler, queue: str = DEFAULT_QUEUE) -> None:
        """Bind a handler to a task type. Re-registering replaces the handler."""
        with self._lock:
            self._registry[task_type] = _Registration(handler=handler, queue=queue)
        logger.debug(f"Registered task '{task_type}' on queue '{queue}'")

    def is_registered(self, task_type: str) -> bool:
        with self._lock:
            return task_type in self._registry

    def enqueue(self, task_type: str, payload: Dict[str, Any]) -> Future:
        """
        Schedule `task_type` with `payload`.

        The payload is deep-copied so later mutation by the caller cannot leak
        into the running task.
        """
        with self._lock:
            registration = self._registry.get(task_type)
        if registration is None:
            raise UnknownTaskError(f"No handler registered for task '{task_type}'.")

        payload = copy.deepcopy(payload)
        logger.info(f"Enqueued '{task_type}' on '{registration.queue}': {payload}")

        if self.eager:
            future: Future = Future()
            try:
                future.set_result(self._run(task_type, registration.handler, payload))
            except Exception as exc:  # noqa: BLE001
                future.set_exception(exc)
            return future

        executor = self._executor_for(registration.queue)
        future = executor.submit(self._run, task_type, registration.handler, payload)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for all outstanding tasks. Returns False if the timeout expired."""
        with self._lock:
            pending = set(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for_tasks: bool = True) -> None:
        with self._lock:
            executors = list(self._executors.values())
            self._executors.clear()
        for executor in executors:
            executor.shutdown(wait=wait_for_tasks)

    def _executor_for(self, queue: str) -> ThreadPoolExecutor:
        with self._lock:
            executor = self._executors.get(queue)
            if executor is None:
                executor = ThreadPoolExecutor(
                    max_workers=self._workers.get(queue, 1),
                    thread_name_prefix=f"jobs-{queue}",
                )
                self._executors[queue] = executor
            return executor

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    @staticmethod
    def _run(task_type: str, handler: TaskHandler, payload: Dict[str, Any]) -> Any:
        try:
            return handler(payload)
        except Exception:
            logger.exception(f"Task '{task_type}' failed with payload {payload}")
            raise


_job_queue: Optional[JobQueue] = None
_job_queue_lock = threading.Lock()


def get_job_queue() -> JobQueue:
    """
    Return the process-wide job queue.

    `GOLF_MEDIA_EAGER_JOBS=1` runs everything inline, which is handy for local
    debugging. `GOLF_MEDIA_AI_WORKERS` sizes the generation pool.
    """
    global _job_queue

    if _job_queue is None:
        with _job_queue_lock:
            if _job_queue is None:
                _job_queue = JobQueue(
                    eager=os.getenv("GOLF_MEDIA_EAGER_JOBS", "0") == "1",
                    workers={"ai_generation": int(os.getenv("GOLF_MEDIA_AI_WORKERS", "2"))},
                )
    return _job_queue
