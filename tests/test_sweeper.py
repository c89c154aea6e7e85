# mergeeats-dispatch/tests/test_sweeper.py

from __future__ import annotations

import threading

from mergedispatch.sweeper import SweepWorker, start_sweepers, stop_sweepers


def test_worker_survives_a_failed_pass():
    calls = []
    done = threading.Event()

    def sweep():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("boom")
        if len(calls) >= 3:
            done.set()
        return {}

    worker = SweepWorker("test-sweep", sweep, interval=0.01)
    worker.start()
    try:
        assert done.wait(5)
    finally:
        worker.stop(timeout=5)
    assert not worker.is_alive()
    assert worker.passes >= 3


def test_start_and_stop_engine_sweepers(engine):
    workers = start_sweepers(engine, interval=0.01)
    assert [w.name for w in workers] == ["formation-sweep", "assignment-sweep"]
    assert all(w.daemon and w.is_alive() for w in workers)

    stop_sweepers(workers)

    assert not any(w.is_alive() for w in workers)
