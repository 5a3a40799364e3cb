from __future__ import annotations

import threading

from aclsentry.dedup import EventDeduplicator


class FakeClock:
    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


def test_concurrent_claims_admit_exactly_one():
    dedup = EventDeduplicator()
    barrier = threading.Barrier(32)
    results: list[bool] = []
    results_lock = threading.Lock()

    def claim() -> None:
        barrier.wait()
        admitted = dedup.should_process("/watch/a/b/new.txt")
        with results_lock:
            results.append(admitted)

    threads = [threading.Thread(target=claim) for _ in range(32)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1
    assert dedup.stats["dedup_hits"] == 31


def test_in_flight_entries_never_expire():
    clock = FakeClock()
    dedup = EventDeduplicator(ttl=10.0, clock=clock)

    assert dedup.should_process("/watch/slow.bin")
    clock.now = 3600.0

    assert not dedup.should_process("/watch/slow.bin")


def test_retention_window_starts_at_release():
    clock = FakeClock()
    dedup = EventDeduplicator(ttl=10.0, clock=clock)
    dedup.should_process("/watch/f.txt")

    clock.now = 100.0
    dedup.release("/watch/f.txt")

    clock.now = 109.9
    assert not dedup.should_process("/watch/f.txt")
    clock.now = 110.0
    assert dedup.should_process("/watch/f.txt")


def test_oldest_released_entries_are_dropped_beyond_max_entries():
    clock = FakeClock()
    dedup = EventDeduplicator(ttl=60.0, max_entries=2, clock=clock)
    for name in ("a", "b", "c"):
        dedup.should_process(f"/watch/{name}")
        dedup.release(f"/watch/{name}")

    assert dedup.stats["retained"] == 2
    assert dedup.should_process("/watch/a")
    assert not dedup.should_process("/watch/b")
    assert not dedup.should_process("/watch/c")


def test_in_flight_entries_survive_the_cap():
    dedup = EventDeduplicator(max_entries=1)
    dedup.should_process("/watch/busy")
    for name in ("x", "y", "z"):
        dedup.should_process(f"/watch/{name}")
        dedup.release(f"/watch/{name}")

    assert not dedup.should_process("/watch/busy")
    assert dedup.stats["in_flight"] == 1


def test_paths_are_compared_after_normalisation():
    dedup = EventDeduplicator()

    assert dedup.should_process("/watch/a/../a/new.txt")
    assert not dedup.should_process("/watch/a/new.txt")


def test_forget_admits_the_next_notification():
    dedup = EventDeduplicator()
    dedup.should_process("/watch/f.txt")
    dedup.release("/watch/f.txt")

    dedup.forget("/watch/f.txt")

    assert dedup.should_process("/watch/f.txt")
