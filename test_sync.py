import threading
import time

import pytest

from regbot.sync import FirstError, JoinBarrier, SkipIfStillRunning


def test_barrier_waits_for_zero():
    barrier = JoinBarrier()
    assert barrier.wait(0)

    assert barrier.register()
    assert barrier.register()
    assert barrier.count == 2
    assert not barrier.wait(0.05)

    barrier.deregister()
    assert not barrier.wait(0.01)
    barrier.deregister()
    assert barrier.wait(0)


def test_barrier_wait_wakes_on_last_deregister():
    barrier = JoinBarrier()
    barrier.register()
    done = threading.Event()

    def waiter():
        barrier.wait()
        done.set()

    t = threading.Thread(target=waiter)
    t.start()
    time.sleep(0.05)
    assert not done.is_set()

    barrier.deregister()
    assert done.wait(2)
    t.join(2)


def test_closed_barrier_refuses_registrations():
    barrier = JoinBarrier()
    assert barrier.register()
    barrier.close()

    assert barrier.closed
    assert not barrier.register()
    assert barrier.count == 1
    barrier.deregister()
    assert barrier.wait(0)


def test_unbalanced_deregister_raises():
    with pytest.raises(RuntimeError):
        JoinBarrier().deregister()


def test_first_error_wins():
    errors = FirstError()
    assert errors.error is None

    first, second = RuntimeError("first"), RuntimeError("second")
    assert errors.record(first)
    assert not errors.record(second)

    assert errors.error is first
    assert errors.count == 2


def test_first_error_under_concurrent_failures():
    errors = FirstError()
    winners = []
    start = threading.Barrier(20)

    def fail(i):
        start.wait()
        if errors.record(RuntimeError(str(i))):
            winners.append(i)

    threads = [threading.Thread(target=fail, args=(i,)) for i in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(5)

    assert len(winners) == 1
    assert str(errors.error) == str(winners[0])
    assert errors.count == 20


def test_skip_if_still_running_drops_overlapping_calls():
    release = threading.Event()
    entered = threading.Event()
    calls = []

    def body():
        calls.append(1)
        entered.set()
        release.wait(5)
        return "done"

    guard = SkipIfStillRunning("slow", body)
    t = threading.Thread(target=guard)
    t.start()
    assert entered.wait(2)
    assert guard.running

    assert guard() is None
    assert guard() is None
    assert guard.skipped == 2

    release.set()
    t.join(2)
    assert not guard.running
    assert guard() == "done"
    assert len(calls) == 2


def test_guards_do_not_block_each_other():
    release = threading.Event()
    a = SkipIfStillRunning("a", lambda: release.wait(5))
    b = SkipIfStillRunning("b", lambda: "b ran")

    t = threading.Thread(target=a)
    t.start()
    time.sleep(0.05)
    assert a.running

    assert b() == "b ran"
    release.set()
    t.join(2)


def test_guard_releases_after_exception():
    def boom():
        raise RuntimeError("boom")

    guard = SkipIfStillRunning("boom", boom)
    with pytest.raises(RuntimeError):
        guard()
    assert not guard.running


def test_skip_count_is_exact_under_contention():
    release = threading.Event()
    entered = threading.Event()

    def body():
        entered.set()
        release.wait(5)

    guard = SkipIfStillRunning("busy", body)
    holder = threading.Thread(target=guard)
    holder.start()
    assert entered.wait(2)

    def fire_many():
        for _ in range(200):
            guard()

    threads = [threading.Thread(target=fire_many) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    release.set()
    holder.join(2)
    assert guard.skipped == 8 * 200
