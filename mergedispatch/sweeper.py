# mergeeats-dispatch/mergedispatch/sweeper.py
"""
Background sweep threads.

A ``SweepWorker`` calls one engine sweep every ``interval`` seconds until it
is stopped. Run one worker per sweep so a slow assignment pass never delays
group finalization.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List, Optional

from .engine import ConsolidationEngine

logger = logging.getLogger(__name__)


class SweepWorker(threading.Thread):
    """
    Daemon thread running ``sweep`` periodically.

    Attributes:
        sweep: Zero-argument callable, usually a bound engine sweep
        interval: Seconds between the end of one pass and the next
        passes: Number of completed passes
    """

    def __init__(self, name: str, sweep: Callable[[], Dict[str, int]], interval: float) -> None:
        super().__init__(name=name, daemon=True)
        self.sweep = sweep
        self.interval = interval
        self.passes = 0
        self._stop_event = threading.Event()

    def run(self) -> None:
        logger.info(f"{self.name} started (every {self.interval}s)")
        while not self._stop_event.is_set():
            try:
                self.sweep()
            except Exception:
                # Keep sweeping; a failed pass is retried on the next tick.
                logger.exception(f"{self.name} pass failed")
            self.passes += 1
            self._stop_event.wait(self.interval)
        logger.info(f"{self.name} stopped after {self.passes} passes")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self.is_alive():
            self.join(timeout)


def start_sweepers(engine: ConsolidationEngine, interval: Optional[float] = None) -> List[SweepWorker]:
    """
    Start the formation and assignment sweep threads for ``engine``.

    Returns:
        The running workers; call ``stop_sweepers`` on shutdown
    """
    interval = interval if interval is not None else engine.settings.sweep_interval_seconds
    workers = [
        SweepWorker("formation-sweep", engine.sweep_formation, interval),
        SweepWorker("assignment-sweep", engine.sweep_assignments, interval),
    ]
    for worker in workers:
        worker.start()
    return workers


def stop_sweepers(workers: List[SweepWorker], timeout: float = 5.0) -> None:
    for worker in workers:
        worker.stop(timeout)
