from __future__ import annotations

from typing import Callable, Protocol

from cashflow.logging_config import get_logger


logger = get_logger("notifier")


class ChangeNotifier(Protocol):
    """Outbound "portfolio data is stale" signal, one method per event kind."""

    def cashflow_created(self, user_id: int) -> None:
        ...

    def cashflow_updated(self, user_id: int) -> None:
        ...

    def cashflow_deleted(self, user_id: int) -> None:
        ...

    def occurrences_materialized(self, user_id: int, count: int) -> None:
        ...


class LoggingChangeNotifier:
    """Default notifier: downstream caches pick the signal up from the log stream."""

    def cashflow_created(self, user_id: int) -> None:
        logger.info("portfolio_changed", extra={"user_id": user_id, "reason": "cashflow_created"})

    def cashflow_updated(self, user_id: int) -> None:
        logger.info("portfolio_changed", extra={"user_id": user_id, "reason": "cashflow_updated"})

    def cashflow_deleted(self, user_id: int) -> None:
        logger.info("portfolio_changed", extra={"user_id": user_id, "reason": "cashflow_deleted"})

    def occurrences_materialized(self, user_id: int, count: int) -> None:
        logger.info(
            "portfolio_changed",
            extra={"user_id": user_id, "reason": "occurrences_materialized", "count": count},
        )


def notify_safely(send: Callable[..., None], *args) -> None:
    """Fire-and-forget: a failing notifier is logged, never raised into the mutation."""
    try:
        send(*args)
    except Exception:
        logger.exception("notification_failed", extra={"event": getattr(send, "__name__", str(send))})
