"""
Per-run counters for sweeps and handlers.
"""

from datetime import UTC, datetime

from app.infrastructure.observability.logging import get_logger, log_sweep_summary

logger = get_logger(__name__)

MAX_RECORDED_ERRORS = 20


class SweepMetrics:
    """Metrics tracking for one sweep run."""

    COUNTERS = ("processed", "sent", "cancelled", "escalated", "updated", "skipped", "failed")

    def __init__(self, sweep: str):
        self.sweep = sweep
        self.reset()

    def reset(self):
        self.start_time = datetime.now(UTC)
        self.total_duration_seconds = 0.0
        self.errors: list[dict] = []
        for counter in self.COUNTERS:
            setattr(self, counter, 0)

    def increment(self, counter: str, amount: int = 1):
        setattr(self, counter, getattr(self, counter) + amount)

    def record_failure(self, item_id: str, error: Exception):
        """Record a per-item failure; the sweep carries on with the next item."""
        self.failed += 1
        if len(self.errors) < MAX_RECORDED_ERRORS:
            self.errors.append(
                {
                    "item_id": item_id,
                    "error": str(error),
                    "error_type": type(error).__name__,
                }
            )
        logger.error(
            "Sweep item failed",
            sweep=self.sweep,
            item_id=item_id,
            error=str(error),
            error_type=type(error).__name__,
        )

    def finalize(self):
        self.total_duration_seconds = (datetime.now(UTC) - self.start_time).total_seconds()
        log_sweep_summary(self.sweep, **self.counters(), duration_seconds=round(self.total_duration_seconds, 2))

    def counters(self) -> dict[str, int]:
        return {counter: getattr(self, counter) for counter in self.COUNTERS}

    def to_dict(self) -> dict:
        return {
            "sweep": self.sweep,
            "start_time": self.start_time.isoformat(),
            "total_duration_seconds": round(self.total_duration_seconds, 2),
            **self.counters(),
            "errors": list(self.errors),
        }
