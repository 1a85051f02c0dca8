from __future__ import annotations

import threading
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Optional, Union

from sqlalchemy.orm import Session

from cashflow.core.config import settings
from cashflow.core.database import get_session_factory
from cashflow.logging_config import get_logger
from cashflow.services.materializer import MaterializationReport, OccurrenceMaterializer
from cashflow.services.notifier import ChangeNotifier


logger = get_logger("scheduler")


def run_materialization(
    as_of: Optional[Union[datetime, date]] = None,
    session_factory: Optional[Callable[[], Session]] = None,
    notifier: ChangeNotifier | None = None,
) -> MaterializationReport:
    """One trigger invocation: materialize everything due at ``as_of`` (default now)."""
    materializer = OccurrenceMaterializer(session_factory or get_session_factory(), notifier=notifier)
    return materializer.materialize_due(as_of)


def parse_reference(value: str) -> Union[date, datetime]:
    """``YYYY-MM-DD`` -> date; anything else ISO 8601 -> datetime. Raises ValueError."""
    value = value.strip()
    if len(value) == 10:
        return date.fromisoformat(value)
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def parse_run_at(value: str) -> time:
    hh, mm = value.strip().split(":", 1)
    return time(int(hh), int(mm), tzinfo=timezone.utc)


def seconds_until(run_at: time, now: Optional[datetime] = None) -> float:
    """Seconds from ``now`` to the next ``run_at`` (UTC wall clock)."""
    now = now or datetime.now(timezone.utc)
    target = datetime.combine(now.date(), run_at.replace(tzinfo=None), tzinfo=timezone.utc)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


class DailyTrigger:
    """Background thread running the materializer once a day at ``run_at`` (UTC).

    Started and stopped by the app lifespan. A run that overlaps a manual
    ``process-recurring`` call is harmless; the materializer tolerates it.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        run_at: Optional[str] = None,
        notifier: ChangeNotifier | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.run_at = parse_run_at(run_at or settings.SCHEDULER_RUN_AT)
        self.notifier = notifier
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._materializer: Optional[OccurrenceMaterializer] = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self.running:
                return
            self._stop.clear()
            self._thread = threading.Thread(target=self._loop, name="cashflow-daily-trigger", daemon=True)
            self._thread.start()
        logger.info("daily_trigger_started", extra={"run_at": self.run_at.strftime("%H:%M")})

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        with self._lock:
            if self._materializer is not None:
                self._materializer.cancel()
            thread = self._thread
        if thread is not None:
            thread.join(timeout)
        logger.info("daily_trigger_stopped")

    def _loop(self) -> None:
        while not self._stop.wait(seconds_until(self.run_at)):
            self.run_once()

    def run_once(self) -> Optional[MaterializationReport]:
        materializer = OccurrenceMaterializer(self.session_factory, notifier=self.notifier)
        with self._lock:
            self._materializer = materializer
        try:
            return materializer.materialize_due()
        except Exception:
            # 다음 실행에서 재시도
            logger.exception("daily_materialization_failed")
            return None
        finally:
            with self._lock:
                self._materializer = None
