import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from typing import Callable, Dict, List, Optional, Protocol

from clipai.core.env import env_int

logger = logging.getLogger(__name__)

JobRunner = Callable[[int], None]


class JobDispatcher(Protocol):
    def dispatch(self, job_id: int, runner: JobRunner) -> None:
        ...


class ThreadPoolDispatcher:
    """In-process bounded pool with a registry of in-flight jobs."""

    def __init__(self, max_workers: Optional[int] = None):
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or env_int("JOB_MAX_WORKERS", 4, minimum=1),
            thread_name_prefix="job_worker",
        )
        self._futures: Dict[int, Future] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _run(job_id: int, runner: JobRunner) -> None:
        try:
            runner(job_id)
        except Exception:
            logger.exception("JOB_TASK_CRASHED job_id=%s", job_id)

    def _forget(self, job_id: int, future: Future) -> None:
        with self._lock:
            if self._futures.get(job_id) is future:
                del self._futures[job_id]

    def dispatch(self, job_id: int, runner: JobRunner) -> Future:
        with self._lock:
            future = self._executor.submit(self._run, job_id, runner)
            self._futures[job_id] = future
        future.add_done_callback(lambda done: self._forget(job_id, done))
        logger.info("JOB_DISPATCHED job_id=%s backend=thread", job_id)
        return future

    def active_jobs(self) -> List[int]:
        with self._lock:
            return sorted(self._futures)

    def wait(self, job_id: int, timeout: Optional[float] = None) -> bool:
        """Block until the job's task finishes. False if it is still running at timeout."""
        with self._lock:
            future = self._futures.get(job_id)
        if future is None:
            return True
        done, _ = wait_futures([future], timeout=timeout)
        return future in done

    def wait_all(self, timeout: Optional[float] = None) -> bool:
        with self._lock:
            futures = list(self._futures.values())
        if not futures:
            return True
        _, not_done = wait_futures(futures, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


class CeleryDispatcher:
    """Hands the job id to a Celery worker, which rebuilds the orchestrator itself."""

    def dispatch(self, job_id: int, runner: JobRunner) -> None:
        from clipai.workers.tasks import process_job

        process_job.delay(job_id)
        logger.info("JOB_DISPATCHED job_id=%s backend=celery", job_id)


def get_dispatcher() -> JobDispatcher:
    backend = (os.getenv("JOB_DISPATCH_BACKEND") or "thread").strip().lower()
    if backend == "celery":
        return CeleryDispatcher()
    if backend != "thread":
        logger.warning("Unknown JOB_DISPATCH_BACKEND=%s, using thread", backend)
    return ThreadPoolDispatcher()
