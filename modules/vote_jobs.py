"""Persisted background jobs for vote reconciliation."""

from __future__ import annotations

import json
import threading
import time
from typing import Any, Callable, Dict, Optional

from modules.voting_store import VotingStore

JobHandler = Callable[[int, Dict[str, Any]], Dict[str, Any]]

RETRY_BASE_SECONDS = 30
RETRY_MAX_SECONDS = 3600


class VoteJobQueue:
    """Outbox of reconciliation jobs with at-least-once delivery.

    Jobs are keyed by topic. Only the oldest pending job of a topic is ever
    handed out, so two jobs for the same topic never run concurrently and
    never overtake each other. Handlers must be idempotent.
    """

    def __init__(
        self,
        store: VotingStore,
        logger: Optional[Callable[[str, str], None]] = None,
        max_retries: int = 5,
        time_fn: Callable[[], float] = time.time,
    ):
        self.store = store
        self._logger = logger
        self.max_retries = max(1, int(max_retries))
        self._time_fn = time_fn
        self._handlers: Dict[str, JobHandler] = {}
        self._process_lock = threading.Lock()

    def _log(self, message: str, level: str = "info") -> None:
        if self._logger:
            self._logger(message, level)

    def _now(self) -> int:
        return int(self._time_fn())

    def register(self, job_type: str, handler: JobHandler) -> None:
        self._handlers[job_type] = handler

    def enqueue(self, job_type: str, topic_id: int, payload: Optional[Dict[str, Any]] = None) -> int:
        payload_json = json.dumps(payload or {}, sort_keys=True, separators=(",", ":"))
        job_id = self.store.add_job(
            job_type=job_type,
            topic_id=topic_id,
            payload_json=payload_json,
            now_ts=self._now(),
            max_retries=self.max_retries,
        )
        self._log(f"voting: enqueued {job_type} job {job_id} for topic {topic_id}", "debug")
        return job_id

    def _retry_at(self, retry_count: int) -> int:
        delay = min(RETRY_BASE_SECONDS * (2 ** retry_count), RETRY_MAX_SECONDS)
        return self._now() + delay

    def _run_job(self, job: Dict[str, Any]) -> Optional[str]:
        """Run one job; return an error string if it must be retried."""
        handler = self._handlers.get(str(job["job_type"]))
        if handler is None:
            return f"no handler for job type {job['job_type']}"
        try:
            payload = json.loads(job.get("payload_json") or "{}")
        except (json.JSONDecodeError, TypeError):
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        try:
            result = handler(int(job["topic_id"]), payload) or {}
        except Exception as exc:
            return f"{type(exc).__name__}: {exc}"
        skipped = int(result.get("skipped", 0) or 0)
        if skipped:
            return f"{skipped} record(s) skipped"
        return None

    def process(self, max_entries: int = 10) -> Dict[str, Any]:
        max_entries = max(1, min(int(max_entries), 500))
        processed = 0
        succeeded = 0
        failed = 0

        with self._process_lock:
            for job in self.store.list_jobs_pending(now_ts=self._now(), limit=max_entries):
                processed += 1
                job_id = int(job["job_id"])
                error = self._run_job(job)
                if error is None:
                    self.store.mark_job_done(job_id, self._now())
                    succeeded += 1
                    continue

                failed += 1
                if str(job["job_type"]) not in self._handlers:
                    # unknown types can never succeed
                    self.store.abandon_job(job_id, error, self._now())
                else:
                    self.store.mark_job_failed(
                        job_id,
                        error,
                        next_retry_at=self._retry_at(int(job.get("retry_count") or 0)),
                        now_ts=self._now(),
                    )
                self._log(f"voting: {job['job_type']} job {job_id} failed: {error}", "warn")

        return {
            "ok": True,
            "processed": processed,
            "succeeded": succeeded,
            "failed": failed,
        }

    def prune(self, retention_days: int) -> int:
        cutoff = self._now() - (retention_days * 86400)
        return self.store.prune_jobs(before_ts=cutoff)


class JobWorker:
    """Drains the job queue on a fixed interval in a daemon thread."""

    def __init__(
        self,
        queue: VoteJobQueue,
        interval_seconds: int = 30,
        logger: Optional[Callable[[str, str], None]] = None,
        batch_size: int = 50,
    ):
        self.queue = queue
        self.interval = max(1, int(interval_seconds))
        self.batch_size = batch_size
        self._logger = logger
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _log(self, message: str, level: str = "info") -> None:
        if self._logger:
            self._logger(message, level)

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="voting-jobs", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=5)

    def _run(self) -> None:
        try:
            while not self._stop.wait(self.interval):
                try:
                    result = self.queue.process(max_entries=self.batch_size)
                    if result["processed"]:
                        self._log(
                            f"voting: processed {result['processed']} job(s), {result['failed']} failed",
                            "debug",
                        )
                except Exception as exc:
                    self._log(f"voting: job worker error: {exc}", "warn")
        finally:
            # connections are thread-local; this one belongs to the worker
            self.queue.store.close()
