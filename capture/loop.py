import logging
import threading
from typing import Callable

from capture.events import CaptureAdapter, ScanEvent

logger = logging.getLogger(__name__)

# handler(event, stop) -> anything; must give up promptly once stop is set.
EventHandler = Callable[[ScanEvent, threading.Event], object]
# on_exit(adapter, stop) runs on the worker after the adapter is released.
ExitHandler = Callable[[CaptureAdapter, threading.Event], object]


class CameraLoop:
    """
    Drives an adapter's `scan_events()` on one worker thread.

    `stop()` cancels the next tick, waits for the worker to exit and makes
    sure the adapter has released its stream before returning.
    """

    def __init__(
        self,
        adapter: CaptureAdapter,
        handler: EventHandler,
        *,
        on_exit: ExitHandler | None = None,
        name: str = "camera-loop",
    ):
        self.adapter = adapter
        self._handler = handler
        self._on_exit = on_exit
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    @property
    def running(self) -> bool:
        return self._thread.is_alive()

    def start(self) -> None:
        self._thread.start()

    def _run(self) -> None:
        try:
            for event in self.adapter.scan_events():
                if self._stop.is_set():
                    break
                self._handler(event, self._stop)
        except Exception:
            logger.exception("Camera loop stopped on error")
        finally:
            self.adapter.deactivate()
            if self._on_exit is not None:
                try:
                    self._on_exit(self.adapter, self._stop)
                except Exception:
                    logger.exception("Camera loop exit handler failed")

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        self.adapter.cancel()
        if self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("Camera loop did not exit within %.1fs", timeout or 0)
        self.adapter.deactivate()
