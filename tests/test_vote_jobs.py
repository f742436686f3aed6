"""Tests for the reconciliation job queue and worker."""

import os
import sys
import threading

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from modules.vote_jobs import JobWorker, VoteJobQueue
from modules.voting_store import VotingStore


class _Clock:
    def __init__(self, now: int = 1_700_000_000):
        self.now = now

    def __call__(self) -> float:
        return float(self.now)


def _make_queue(tmp_path, max_retries=3):
    store = VotingStore(db_path=str(tmp_path / "jobs.db"))
    store.initialize()
    clock = _Clock()
    queue = VoteJobQueue(store, max_retries=max_retries, time_fn=clock)
    return store, queue, clock


def test_enqueue_and_process(tmp_path):
    store, queue, _ = _make_queue(tmp_path)
    seen = []
    queue.register("release", lambda topic_id, payload: seen.append((topic_id, payload)) or {"ok": True})

    job_id = queue.enqueue("release", 10, {"reason": "closed"})
    result = queue.process()

    assert result == {"ok": True, "processed": 1, "succeeded": 1, "failed": 0}
    assert seen == [(10, {"reason": "closed"})]
    assert store.get_job(job_id)["status"] == "done"
    assert queue.process()["processed"] == 0


def test_jobs_for_same_topic_run_in_order(tmp_path):
    store, queue, _ = _make_queue(tmp_path)
    seen = []
    queue.register("release", lambda topic_id, payload: seen.append(("release", topic_id)) or {})
    queue.register("reclaim", lambda topic_id, payload: seen.append(("reclaim", topic_id)) or {})

    queue.enqueue("release", 10)
    queue.enqueue("reclaim", 10)
    queue.enqueue("release", 11)

    first = queue.process()
    assert first["processed"] == 2
    assert seen == [("release", 10), ("release", 11)]

    queue.process()
    assert seen[-1] == ("reclaim", 10)


def test_failed_job_is_retried_with_backoff(tmp_path):
    store, queue, clock = _make_queue(tmp_path, max_retries=3)
    attempts = []

    def _flaky(topic_id, payload):
        attempts.append(topic_id)
        if len(attempts) < 2:
            raise RuntimeError("database is locked")
        return {"ok": True}

    queue.register("release", _flaky)
    job_id = queue.enqueue("release", 10)

    first = queue.process()
    assert first["failed"] == 1
    job = store.get_job(job_id)
    assert job["status"] == "pending"
    assert job["retry_count"] == 1
    assert "database is locked" in job["last_error"]
    assert job["next_retry_at"] == clock.now + 30

    # not due yet
    assert queue.process()["processed"] == 0

    clock.now += 30
    second = queue.process()
    assert second["succeeded"] == 1
    assert store.get_job(job_id)["status"] == "done"


def test_job_gives_up_after_max_retries(tmp_path):
    store, queue, clock = _make_queue(tmp_path, max_retries=2)

    def _broken(topic_id, payload):
        raise RuntimeError("boom")

    queue.register("release", _broken)
    job_id = queue.enqueue("release", 10)

    queue.process()
    clock.now += 3600
    queue.process()

    job = store.get_job(job_id)
    assert job["status"] == "failed"
    assert job["retry_count"] == 2
    assert store.count_jobs_by_status("failed") == 1


def test_skipped_records_cause_retry(tmp_path):
    store, queue, _ = _make_queue(tmp_path)
    queue.register("release", lambda topic_id, payload: {"ok": True, "skipped": 2})

    job_id = queue.enqueue("release", 10)
    result = queue.process()

    assert result["failed"] == 1
    job = store.get_job(job_id)
    assert job["status"] == "pending"
    assert "2 record(s) skipped" in job["last_error"]


def test_unknown_job_type_fails_permanently(tmp_path):
    store, queue, _ = _make_queue(tmp_path)

    job_id = queue.enqueue("teleport", 10)
    result = queue.process()

    assert result["failed"] == 1
    assert store.get_job(job_id)["status"] == "failed"


def test_prune_removes_old_finished_jobs(tmp_path):
    store, queue, clock = _make_queue(tmp_path)
    queue.register("release", lambda topic_id, payload: {})
    done_id = queue.enqueue("release", 10)
    queue.process()
    pending_id = queue.enqueue("teleport-later", 11)
    store.add_job("release", 12, "{}", now_ts=clock.now, max_retries=1)

    clock.now += 40 * 86400
    removed = queue.prune(retention_days=30)

    assert removed == 1
    assert store.get_job(done_id) is None
    assert store.get_job(pending_id) is not None


def test_worker_drains_queue_in_background(tmp_path):
    processed = threading.Event()
    closed_by = []

    class _StubStore:
        def close(self):
            closed_by.append(threading.current_thread().name)

    class _StubQueue:
        store = _StubStore()

        def process(self, max_entries=10):
            processed.set()
            return {"ok": True, "processed": 1, "succeeded": 1, "failed": 0}

    worker = JobWorker(_StubQueue(), interval_seconds=1)
    worker.start()
    try:
        assert worker.is_running()
        assert processed.wait(timeout=5)
    finally:
        worker.stop()
    assert not worker.is_running()
    assert closed_by == ["voting-jobs"]
