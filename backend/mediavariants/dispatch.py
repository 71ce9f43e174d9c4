"""Request-scoped conversion batching and the in-process async job dispatcher."""
import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from mediavariants import config as app_config

logger = logging.getLogger("mediavariants.dispatch")


class RequestBatch:
    """Asset ids collected during one request, converted once after the response.

    Repeated triggers for the same asset coalesce into one entry. flush() runs at most once."""

    def __init__(self, handler: Callable[[str], Any]):
        self._handler = handler
        self._pending: list[str] = []
        self._flushed = False
        self._lock = threading.Lock()

    def add(self, asset_id: str) -> bool:
        """Queue asset_id; False if it was already queued or the batch has been flushed."""
        with self._lock:
            if self._flushed:
                logger.warning("Batch already flushed, ignoring asset %s", asset_id)
                return False
            if asset_id in self._pending:
                return False
            self._pending.append(asset_id)
            return True

    @property
    def pending(self) -> list[str]:
        return list(self._pending)

    def flush(self) -> dict[str, Any]:
        with self._lock:
            if self._flushed:
                return {}
            self._flushed = True
            pending, self._pending = self._pending, []
        results: dict[str, Any] = {}
        for asset_id in pending:
            try:
                results[asset_id] = self._handler(asset_id)
            except Exception as e:
                logger.exception("Deferred conversion failed for asset %s: %s", asset_id, e)
                results[asset_id] = {"error": str(e)}
        if pending:
            logger.info("Flushed conversion batch: %d asset(s)", len(pending))
        return results


@dataclass
class DispatchedJob:
    job_id: str
    job_name: str
    args: tuple
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    future: Optional[Future] = None

    def to_dict(self) -> dict:
        return {"job_id": self.job_id, "job_name": self.job_name, "args": list(self.args), "created_at": self.created_at}


class JobDispatcher:
    """Runs named jobs on a thread pool. A job with the same name and args is never pending twice."""

    def __init__(self, max_workers: Optional[int] = None):
        self._handlers: dict[str, Callable[..., Any]] = {}
        self._pending: dict[tuple, DispatchedJob] = {}
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or app_config.MAX_WORKERS,
            thread_name_prefix="variant-job",
        )

    def register(self, job_name: str, handler: Callable[..., Any]) -> None:
        self._handlers[job_name] = handler

    def is_pending(self, job_name: str, args) -> bool:
        with self._lock:
            return (job_name, tuple(args)) in self._pending

    def pending_jobs(self) -> list[DispatchedJob]:
        with self._lock:
            return list(self._pending.values())

    def enqueue(self, job_name: str, args) -> Optional[str]:
        """Schedule job_name(*args). Returns the job id, or None when unknown or already pending."""
        handler = self._handlers.get(job_name)
        if handler is None:
            logger.error("No handler registered for job %s", job_name)
            return None
        key = (job_name, tuple(args))
        with self._lock:
            if key in self._pending:
                logger.info("Job %s%s already pending, not enqueuing again", job_name, key[1])
                return None
            job = DispatchedJob(job_id=uuid.uuid4().hex, job_name=job_name, args=key[1])
            self._pending[key] = job
        job.future = self._executor.submit(self._run, key, handler)
        logger.info("Enqueued job %s %s (%s)", job_name, key[1], job.job_id)
        return job.job_id

    def _run(self, key: tuple, handler: Callable[..., Any]) -> Any:
        try:
            return handler(*key[1])
        except Exception as e:
            logger.exception("Job %s%s failed: %s", key[0], key[1], e)
            raise
        finally:
            with self._lock:
                self._pending.pop(key, None)

    def shutdown(self, wait: bool = True, cancel_futures: bool = False) -> None:
        """Stop accepting jobs. With cancel_futures, jobs that have not started are dropped."""
        self._executor.shutdown(wait=wait, cancel_futures=cancel_futures)
        with self._lock:
            for key, job in list(self._pending.items()):
                if job.future is not None and job.future.cancelled():
                    logger.info("Dropped job %s%s before it started", key[0], key[1])
                    del self._pending[key]
