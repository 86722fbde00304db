import logging
import threading
import time

logger = logging.getLogger(__name__)


class Monitor:
    """Base class for background monitoring threads.

    With fixed_rate=True the interval is measured start-to-start, so a slow
    check shortens the following wait instead of pushing the schedule back.
    """

    def __init__(self, name: str, interval: float, shutdown_event: threading.Event,
                 fixed_rate: bool = False):
        """Initialize monitor.

        Args:
            name: Monitor name
            interval: Check interval in seconds
            shutdown_event: Event to signal shutdown
            fixed_rate: Measure interval from the start of each check
        """
        self.name = name
        self.interval = interval
        self.shutdown_event = shutdown_event
        self.fixed_rate = fixed_rate
        self.thread = None
        self._stop_requested = threading.Event()

    def start(self) -> None:
        """Start the monitor thread.
        """
        self.thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=self.name
        )
        self.thread.start()
        logger.info(f'{self.name} monitor started')

    def stop(self) -> None:
        """Request the monitor to stop its thread.
        """
        self._stop_requested.set()

    def join(self, timeout: float = 10) -> None:
        if self.thread and self.thread.is_alive():
            logger.debug(f'Joining {self.name} thread...')
            self.thread.join(timeout=timeout)
            if self.thread.is_alive():
                logger.warning(f'{self.name} thread did not stop within timeout')

    @property
    def stopping(self) -> bool:
        return self.shutdown_event.is_set() or self._stop_requested.is_set()

    def before_first_check(self) -> None:
        """Hook run once on the monitor thread before the loop starts.
        """

    def _wait(self, seconds: float) -> bool:
        """Sleep up to seconds; True if the monitor should exit.
        """
        deadline = time.monotonic() + max(seconds, 0)
        while not self.stopping:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            if self.shutdown_event.wait(timeout=min(remaining, 0.5)):
                break
        return True

    def _run(self) -> None:
        """Main monitoring loop.
        """
        try:
            self.before_first_check()
        except Exception as e:
            logger.error(f'{self.name} monitor startup error: {e}', exc_info=True)

        if self._wait(self.interval):
            return

        while not self.stopping:
            started = time.monotonic()
            try:
                self.check()
            except Exception as e:
                logger.error(f'{self.name} monitor error: {e}', exc_info=True)
                if self._wait(1.0):
                    break
                continue

            wait = self.interval
            if self.fixed_rate:
                wait = self.interval - (time.monotonic() - started)
            if self._wait(wait):
                break

    def check(self) -> None:
        """Perform monitoring check - to be implemented by subclasses.
        """
        raise NotImplementedError
