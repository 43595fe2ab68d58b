import logging
import threading
from typing import Callable

logger = logging.getLogger(__name__)


class PeriodicJob(threading.Thread):
    """Runs ``func`` every ``interval`` seconds until stopped."""

    def __init__(self, name: str, interval: float, func: Callable[[], object]):
        super().__init__(name=f"addrpool-{name}", daemon=True)
        self.job_name = name
        self.interval = interval
        self.func = func
        self._stop_event = threading.Event()

    def run(self) -> None:
        logger.info("Job %s started, every %ss", self.job_name, self.interval)
        while not self._stop_event.wait(self.interval):
            try:
                self.func()
            except Exception:
                logger.exception("Job %s failed; next run in %ss", self.job_name, self.interval)
        logger.info("Job %s stopped", self.job_name)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self.is_alive():
            self.join(timeout)
