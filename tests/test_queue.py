"""Unit tests for the SQLite job store.

Tests cover:
- Record put/get/list with TTL expiry
- Conditional writes (put_if)
- FIFO enqueue/dequeue with bounded waits
- Concurrent dequeue safety
- Backend error translation
"""

import sqlite3
import threading
import time
from unittest.mock import patch

import pytest

from frame_pipeline.errors import StoreUnavailable
from frame_pipeline.queue import JobStatus, SQLiteJobStore, open_store
from frame_pipeline.queue.models import Job


class TestRecords:
    """Test job record persistence."""

    def test_put_then_get(self, store):
        job = Job(input_ref="file123")
        store.put(job)

        loaded = store.get(job.id)
        assert loaded == job

    def test_get_missing_returns_none(self, store):
        assert store.get("job_missing") is None

    def test_put_replaces_whole_record(self, store):
        job = Job(input_ref="file123")
        store.put(job)

        job.start_processing()
        job.report_progress(10)
        store.put(job)

        loaded = store.get(job.id)
        assert loaded.status == JobStatus.PROCESSING
        assert loaded.progress == 10

    def test_list_all(self, store):
        jobs = [Job(input_ref=f"file{i}") for i in range(3)]
        for job in jobs:
            store.put(job)

        listed = {job.id for job in store.list_all()}
        assert listed == {job.id for job in jobs}

    def test_expired_records_are_invisible(self, tmp_path):
        store = SQLiteJobStore(str(tmp_path / "ttl.db"), ttl_s=60)
        job = Job(input_ref="file123")
        store.put(job)

        with patch("frame_pipeline.queue.sqlite_backend.time.time", return_value=time.time() + 120):
            assert store.get(job.id) is None
            assert store.list_all() == []
        store.close()

    def test_write_refreshes_ttl(self, tmp_path):
        store = SQLiteJobStore(str(tmp_path / "ttl.db"), ttl_s=60)
        job = Job(input_ref="file123")
        start = time.time()

        with patch("frame_pipeline.queue.sqlite_backend.time.time", return_value=start):
            store.put(job)
        with patch("frame_pipeline.queue.sqlite_backend.time.time", return_value=start + 50):
            job.start_processing()
            assert store.put_if(job, JobStatus.PENDING)
        with patch("frame_pipeline.queue.sqlite_backend.time.time", return_value=start + 100):
            assert store.get(job.id) is not None
        store.close()

    def test_unreadable_payload_skipped(self, store):
        good = Job(input_ref="file123")
        store.put(good)
        store.db["jobs"].insert(
            {
                "job_id": "job_broken",
                "status": "pending",
                "created_at": "x",
                "updated_at": "x",
                "expires_at": time.time() + 60,
                "payload": "{not json",
            }
        )
        assert [job.id for job in store.list_all()] == [good.id]
        assert store.get("job_broken") is None


class TestConditionalWrite:
    """Test put_if, the compare-and-set used by every execution unit write."""

    def test_put_if_matches(self, store):
        job = Job(input_ref="file123")
        store.put(job)

        job.start_processing()
        assert store.put_if(job, JobStatus.PENDING) is True
        assert store.get(job.id).status == JobStatus.PROCESSING

    def test_put_if_mismatch_leaves_record(self, store):
        job = Job(input_ref="file123")
        store.put(job)

        cancelled = job.model_copy(deep=True)
        cancelled.cancel()
        store.put(cancelled)

        job.start_processing()
        assert store.put_if(job, JobStatus.PENDING) is False
        assert store.get(job.id).status == JobStatus.CANCELLED

    def test_put_if_missing_record(self, store):
        job = Job(input_ref="file123")
        assert store.put_if(job, JobStatus.PENDING) is False
        assert store.get(job.id) is None

    def test_only_one_claim_wins(self, store):
        job = Job(input_ref="file123")
        store.put(job)

        first = store.get(job.id)
        second = store.get(job.id)
        first.start_processing()
        second.start_processing()

        assert store.put_if(first, JobStatus.PENDING) is True
        assert store.put_if(second, JobStatus.PENDING) is False


class TestPendingList:
    """Test enqueue/dequeue semantics."""

    def test_fifo_order(self, store):
        for job_id in ["job_a", "job_b", "job_c"]:
            store.enqueue(job_id)

        assert store.dequeue() == "job_a"
        assert store.dequeue() == "job_b"
        assert store.dequeue() == "job_c"
        assert store.dequeue() is None

    def test_pending_count(self, store):
        assert store.pending_count() == 0
        store.enqueue("job_a")
        store.enqueue("job_b")
        assert store.pending_count() == 2
        store.dequeue()
        assert store.pending_count() == 1

    def test_dequeue_empty_waits_for_timeout(self, store):
        start = time.monotonic()
        assert store.dequeue(timeout=0.2) is None
        assert time.monotonic() - start >= 0.19

    def test_dequeue_picks_up_late_enqueue(self, store):
        timer = threading.Timer(0.1, store.enqueue, args=("job_late",))
        timer.start()
        try:
            assert store.dequeue(timeout=2.0) == "job_late"
        finally:
            timer.cancel()

    def test_concurrent_dequeue_hands_out_each_id_once(self, store):
        ids = [f"job_{i}" for i in range(50)]
        for job_id in ids:
            store.enqueue(job_id)

        taken = []
        lock = threading.Lock()

        def consume():
            while True:
                job_id = store.dequeue()
                if job_id is None:
                    return
                with lock:
                    taken.append(job_id)

        threads = [threading.Thread(target=consume) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(taken) == sorted(ids)

    def test_two_store_instances_share_queue(self, tmp_path):
        """Test API process and worker process see the same pending list."""
        db_path = str(tmp_path / "shared.db")
        api_side = open_store(db_path)
        worker_side = open_store(db_path)

        job = Job(input_ref="file123")
        api_side.put(job)
        api_side.enqueue(job.id)

        assert worker_side.dequeue() == job.id
        assert worker_side.get(job.id) == job
        api_side.close()
        worker_side.close()


class TestErrors:
    """Test backend failure handling."""

    def test_ping(self, store):
        assert store.ping() is True

    def test_closed_store_is_unavailable(self, tmp_path):
        store = SQLiteJobStore(str(tmp_path / "closed.db"))
        store.close()

        assert store.ping() is False
        with pytest.raises(StoreUnavailable):
            store.get("job_x")
        with pytest.raises(StoreUnavailable):
            store.dequeue()

    def test_lock_errors_retried(self, store):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise sqlite3.OperationalError("database is locked")
            return "ok"

        with patch("frame_pipeline.queue.sqlite_backend.time.sleep"):
            assert store._run(flaky) == "ok"
        assert len(calls) == 3

    def test_lock_errors_exhausted(self, store):
        def locked():
            raise sqlite3.OperationalError("database is locked")

        with patch("frame_pipeline.queue.sqlite_backend.time.sleep"):
            with pytest.raises(StoreUnavailable):
                store._run(locked)

    def test_repr(self, store):
        assert "SQLiteJobStore" in repr(store)
