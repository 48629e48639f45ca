from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from fiat_portal_automation.errors import DuplicateJob
from fiat_portal_automation.job_queue import JobQueue


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def queue(clock: FakeClock):
    q = JobQueue(clock=clock)
    yield q
    q.shutdown(wait=True)


def test_second_registration_with_same_order_id_is_rejected(queue: JobQueue) -> None:
    assert queue.try_register("ORD-1", "GLOSA-A") is True
    assert queue.try_register("ORD-1", "GLOSA-B") is False


def test_second_registration_with_same_memo_is_rejected(queue: JobQueue) -> None:
    assert queue.try_register("ORD-1", "GLOSA-A") is True
    assert queue.try_register("ORD-2", "GLOSA-A") is False
    assert queue.try_register("ORD-2", "GLOSA-B") is True


def test_enqueue_exclusive_duplicate_raises_synchronously_and_never_runs(queue: JobQueue) -> None:
    ran: list[str] = []

    queue.enqueue_exclusive("ORD-1", "GLOSA-A", lambda: ran.append("first")).result(timeout=5)
    with pytest.raises(DuplicateJob) as excinfo:
        queue.enqueue_exclusive("ORD-1", "GLOSA-B", lambda: ran.append("second"))

    queue.enqueue(lambda: None).result(timeout=5)
    assert ran == ["first"]
    assert excinfo.value.key == "ORD-1"
    assert excinfo.value.secondary_key == "GLOSA-B"


def test_concurrent_exclusive_submissions_run_at_most_once(queue: JobQueue) -> None:
    executions: list[int] = []
    duplicates: list[DuplicateJob] = []
    start = threading.Barrier(8)

    def caller(i: int) -> None:
        start.wait()
        try:
            queue.enqueue_exclusive("ORD-7", f"GLOSA-{i}", lambda: executions.append(i))
        except DuplicateJob as e:
            duplicates.append(e)

    threads = [threading.Thread(target=caller, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)
    queue.enqueue(lambda: None).result(timeout=5)

    assert len(executions) == 1
    assert len(duplicates) == 7


def test_record_older_than_window_no_longer_blocks(queue: JobQueue, clock: FakeClock) -> None:
    assert queue.try_register("ORD-1", "GLOSA-A") is True

    clock.advance(hours=23, minutes=59)
    assert queue.try_register("ORD-1", "GLOSA-A") is False

    clock.advance(minutes=2)
    assert queue.try_register("ORD-1", "GLOSA-A") is True


def test_expired_records_are_swept_on_registration(queue: JobQueue, clock: FakeClock) -> None:
    for i in range(5):
        queue.try_register(f"ORD-{i}", f"GLOSA-{i}")
    assert len(queue.pending_records()) == 5

    clock.advance(hours=25)
    queue.try_register("ORD-NEW", "GLOSA-NEW")

    records = queue.pending_records()
    assert [r.business_key for r in records] == ["ORD-NEW"]
    assert records[0].expires_at - records[0].registered_at == timedelta(hours=24)


def test_tasks_run_one_at_a_time_in_submission_order(queue: JobQueue) -> None:
    order: list[int] = []
    active = 0
    max_active = 0
    lock = threading.Lock()

    def make(i: int, delay: float):
        def task() -> int:
            nonlocal active, max_active
            with lock:
                active += 1
                max_active = max(max_active, active)
            time.sleep(delay)
            order.append(i)
            with lock:
                active -= 1
            return i

        return task

    # Longer tasks first: a reordering or parallel executor would finish them last.
    futures = [queue.enqueue(make(i, 0.02 * (5 - i))) for i in range(5)]
    results = [f.result(timeout=5) for f in futures]

    assert results == [0, 1, 2, 3, 4]
    assert order == [0, 1, 2, 3, 4]
    assert max_active == 1


def test_failed_task_does_not_block_the_next(queue: JobQueue) -> None:
    def boom() -> None:
        raise RuntimeError("portal exploded")

    failed = queue.enqueue(boom)
    ok = queue.enqueue(lambda: "next")

    assert ok.result(timeout=5) == "next"
    with pytest.raises(RuntimeError, match="portal exploded"):
        failed.result(timeout=5)


def test_window_must_be_positive() -> None:
    with pytest.raises(ValueError):
        JobQueue(dedup_window=timedelta(0))


def test_registration_is_rolled_back_when_queue_is_shut_down(clock: FakeClock) -> None:
    q = JobQueue(clock=clock)
    q.shutdown(wait=True)

    with pytest.raises(RuntimeError):
        q.enqueue_exclusive("ORD-1", "GLOSA-A", lambda: None)

    assert q.pending_records() == []
    assert q.try_register("ORD-1", "GLOSA-A") is True
