"""Orchestrator - periodic tick coordination.

Schedule (all UTC):
    - daily: refresh + verify + send, once at AGENCYFLOW_DAILY_RUN_HOUR
    - refresh: every AGENCYFLOW_REFRESH_INTERVAL_MINUTES (hourly)
    - send: verify + send every AGENCYFLOW_SEND_INTERVAL_MINUTES (half-hourly)

The first send slot of the daily hour is skipped: the daily cycle
already covers it.

Runs in a background daemon thread (start/stop) or blocking on the main
thread (run_headless) when launched by cron or a service manager.
"""

import threading
from datetime import date, datetime, timedelta
from typing import Optional

from src.autonomous.runner import AutomationRunner, Clock, RunResult, utc_now
from src.core.config import Config, get_config
from src.core.exceptions import RunLockError
from src.core.logging import get_logger

logger = get_logger(__name__)

# How often the orchestrator checks for due actions (seconds)
_CHECK_INTERVAL_SECONDS = 30

ACTION_DAILY = "daily"
ACTION_REFRESH = "refresh"
ACTION_SEND = "send"


class Orchestrator:
    """Tick coordinator for the scheduled automation actions."""

    def __init__(
        self,
        runner: AutomationRunner,
        config: Optional[Config] = None,
        clock: Clock = utc_now,
        check_interval_seconds: float = _CHECK_INTERVAL_SECONDS,
    ) -> None:
        self.runner = runner
        self.config = config or get_config()
        self.clock = clock
        self.check_interval_seconds = check_interval_seconds

        self._last_daily: Optional[date] = None
        self._last_refresh: Optional[datetime] = None
        self._last_send: Optional[datetime] = None

        self._running: bool = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @property
    def refresh_interval(self) -> timedelta:
        return timedelta(minutes=self.config.refresh_interval_minutes)

    @property
    def send_interval(self) -> timedelta:
        return timedelta(minutes=self.config.send_interval_minutes)

    def _in_daily_first_slot(self, now: datetime) -> bool:
        return (
            now.hour == self.config.daily_run_hour
            and now.minute < self.config.send_interval_minutes
        )

    def due_actions(self, now: datetime) -> list[str]:
        """Actions due at now, in run order. Does not change state."""
        if now.hour == self.config.daily_run_hour and self._last_daily != now.date():
            return [ACTION_DAILY]

        due = []
        if self._last_refresh is None or now - self._last_refresh >= self.refresh_interval:
            due.append(ACTION_REFRESH)
        if (
            self._last_send is None or now - self._last_send >= self.send_interval
        ) and not self._in_daily_first_slot(now):
            due.append(ACTION_SEND)
        return due

    def tick(self, now: Optional[datetime] = None) -> dict[str, RunResult]:
        """Run whatever is due.

        A failing action is logged and marked as run; an action blocked by
        the run-lock is left due so the next check retries it.

        Returns:
            Results of the actions that completed, by action name
        """
        now = now or self.clock()
        results: dict[str, RunResult] = {}

        for action in self.due_actions(now):
            logger.info(f"Running action: {action}", extra={"context": {"action": action}})
            try:
                results[action] = self._run_action(action, now)
            except RunLockError as exc:
                logger.warning(
                    f"Action skipped, another tick is running: {action}",
                    extra={"context": {"action": action, "error": str(exc)}},
                )
                continue
            except Exception as exc:
                logger.error(
                    f"Action failed: {action}",
                    extra={"context": {"action": action, "error": str(exc)}},
                    exc_info=True,
                )
            self._mark_run(action, now)

        return results

    def _run_action(self, action: str, now: datetime) -> RunResult:
        if action == ACTION_DAILY:
            return self.runner.daily(now)
        if action == ACTION_REFRESH:
            return self.runner.refresh(now)
        # The half-hourly slot advances elapsed waits before sending
        result = self.runner.verify(now)
        result.merge(self.runner.send(now))
        result.action = ACTION_SEND
        return result

    def _mark_run(self, action: str, now: datetime) -> None:
        if action == ACTION_DAILY:
            self._last_daily = now.date()
            self._last_refresh = now
            self._last_send = now
        elif action == ACTION_REFRESH:
            self._last_refresh = now
        else:
            self._last_send = now

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _begin(self, mode: str) -> bool:
        if self._running:
            logger.warning("Orchestrator already running", extra={"context": {"mode": mode}})
            return False
        self._running = True
        self._stop_event.clear()
        logger.info(
            f"Orchestrator started ({mode})",
            extra={
                "context": {
                    "daily_run_hour": self.config.daily_run_hour,
                    "check_interval_seconds": self.check_interval_seconds,
                }
            },
        )
        return True

    def start(self) -> None:
        """Start the tick loop in a background daemon thread."""
        if not self._begin("background"):
            return
        self._thread = threading.Thread(
            target=self._run_loop, name="agencyflow-orchestrator", daemon=True
        )
        self._thread.start()

    def run_headless(self) -> None:
        """Tick on the calling thread until stop() or Ctrl-C."""
        if not self._begin("headless"):
            return
        try:
            self._run_loop()
        except KeyboardInterrupt:
            logger.info("Orchestrator interrupted")
        finally:
            self._running = False
            logger.info("Orchestrator stopped (headless)")

    def stop(self, timeout: float = 10.0) -> None:
        """Signal the loop and wait up to ``timeout`` seconds for the current tick."""
        if not self._running:
            return
        self._running = False
        self._stop_event.set()

        thread, self._thread = self._thread, None
        if thread is not None:
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Orchestrator tick still running after stop timeout")
        logger.info("Orchestrator stopped")

    def is_running(self) -> bool:
        return self._running

    def _run_loop(self) -> None:
        while self._running:
            self.tick()
            if self._stop_event.wait(timeout=self.check_interval_seconds):
                break
