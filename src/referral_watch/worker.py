from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Optional

from .engine import CycleResult, PollingEngine, WorkerContext
from .logging_config import log_event
from .session import SessionManager


logger = logging.getLogger(__name__)


class Worker:
    """
    Drives the polling loop.

    Every browser interaction (cycles, restarts, shutdown) runs on one dedicated thread: Playwright's
    sync objects are bound to the thread that created them. A timer thread submits one cycle per
    interval and skips a tick while the previous cycle is still running.
    """

    def __init__(
        self,
        engine: PollingEngine,
        session_manager: SessionManager,
        *,
        interval_minutes: float,
        context: Optional[WorkerContext] = None,
    ) -> None:
        self.engine = engine
        self.session_manager = session_manager
        self.interval_seconds = float(interval_minutes) * 60.0
        self.context = context or WorkerContext()

        self._executor = self._new_executor()
        self._stop = threading.Event()
        self._timer: Optional[threading.Thread] = None
        self._pending: Optional[Future] = None
        self._pending_lock = threading.Lock()

    @staticmethod
    def _new_executor() -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=1, thread_name_prefix="referral-worker")

    @property
    def running(self) -> bool:
        return self._timer is not None and self._timer.is_alive()

    def start(self) -> None:
        """Start the timer loop; the first cycle is submitted immediately."""
        if self.running:
            return
        self._stop.clear()
        self._timer = threading.Thread(target=self._loop, name="referral-timer", daemon=True)
        self._timer.start()
        logger.info("Polling every %.1f minute(s).", self.interval_seconds / 60.0)

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.tick()
            self._stop.wait(self.interval_seconds)

    def tick(self) -> Optional[Future]:
        with self._pending_lock:
            if self._pending is not None and not self._pending.done():
                log_event(logger, "cycle.skipped", reason="previous cycle still running")
                return None
            self._pending = self._executor.submit(self._safe_cycle)
            return self._pending

    def _safe_cycle(self) -> Optional[CycleResult]:
        try:
            return self.engine.run_cycle(self.context)
        except Exception:
            logger.exception("Poll cycle crashed")
            return None

    def run_once(self, timeout: Optional[float] = None) -> Optional[CycleResult]:
        return self._executor.submit(self._safe_cycle).result(timeout=timeout)

    def restart(self, timeout: float) -> tuple[bool, str]:
        """
        Drop the current session and log in again on the worker thread, then make sure the timer runs.

        Returns `(ok, message)`; never raises.
        """
        future = self._executor.submit(self._restart_session)
        try:
            ok, message = future.result(timeout=timeout)
        except FutureTimeout:
            return False, f"Session was not established within {timeout:.0f}s"
        if ok:
            self.start()
        return ok, message

    def _restart_session(self) -> tuple[bool, str]:
        self.session_manager.invalidate("manual restart")
        try:
            self.session_manager.ensure()
        except Exception as e:
            logger.warning("Manual restart failed: %s", e)
            return False, f"{type(e).__name__}: {e}"
        return True, "Bot started; portal session established"

    def stop(self, timeout: float = 30.0) -> None:
        self._stop.set()
        if self._timer is not None:
            self._timer.join(timeout=timeout)
            self._timer = None
        try:
            self._executor.submit(self.session_manager.close).result(timeout=timeout)
        except Exception:
            logger.warning("Failed to close the portal session cleanly.", exc_info=True)
        self._executor.shutdown(wait=True)
        self._executor = self._new_executor()

    def status(self) -> dict[str, Any]:
        last = self.context.last_cycle
        return {
            "running": self.running,
            "watermark": self.context.last_check_time.isoformat(),
            "cycles_completed": self.context.cycles_completed,
            "last_cycle": last.summary() if last else None,
            "session": self.session_manager.describe(),
        }
