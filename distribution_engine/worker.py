"""Worker pool: parallel dispatch workers plus a lease sweeper.

Every worker runs the same loop against a shared Dispatcher, under its own
worker token. Workers never coordinate with each other directly; the job
store's atomic lease is the only mutual exclusion between them.
"""

from __future__ import annotations

import logging
import threading

from distribution_engine.dispatcher import Dispatcher

logger = logging.getLogger(__name__)


class WorkerPool:
    """Runs dispatch workers in background threads until stopped."""

    def __init__(
        self,
        dispatcher: Dispatcher,
        workers: int = 4,
        poll_interval: float = 5.0,
        sweep_interval: float = 60.0,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self.dispatcher = dispatcher
        self.workers = workers
        self.poll_interval = poll_interval
        self.sweep_interval = sweep_interval
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def worker_tokens(self) -> list[str]:
        return [f"{self.dispatcher.worker_token}-{i}" for i in range(self.workers)]

    def start(self) -> None:
        if self._threads:
            raise RuntimeError("WorkerPool already started")
        self._stop.clear()
        for i, token in enumerate(self.worker_tokens()):
            thread = threading.Thread(
                target=self._work, args=(token,), name=f"dispatch-{i}", daemon=True,
            )
            self._threads.append(thread)
        self._threads.append(
            threading.Thread(target=self._sweep, name="lease-sweeper", daemon=True),
        )
        for thread in self._threads:
            thread.start()
        logger.info(
            "Started %d dispatch worker(s), polling every %.1fs", self.workers, self.poll_interval,
        )

    def _work(self, token: str) -> None:
        while not self._stop.is_set():
            try:
                results = self.dispatcher.run_once(worker_token=token)
            except Exception:
                logger.exception("Dispatch worker %s failed, backing off", token)
                results = []
            if not results:
                self._stop.wait(self.poll_interval)

    def _sweep(self) -> None:
        while not self._stop.wait(self.sweep_interval):
            try:
                self.dispatcher.release_expired_leases()
            except Exception:
                logger.exception("Lease sweep failed")

    def stop(self, timeout: float | None = None) -> None:
        """Signal every thread to stop and wait for them to exit."""
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info("Dispatch workers stopped")

    def run_forever(self) -> None:
        """Run until interrupted (Ctrl-C)."""
        self.start()
        try:
            while not self._stop.wait(1.0):
                pass
        except KeyboardInterrupt:
            logger.info("Interrupted, shutting down")
        finally:
            self.stop()

    def __enter__(self) -> WorkerPool:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()
