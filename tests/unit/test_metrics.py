from unittest.mock import patch

from app.features.automation.services.metrics import MAX_RECORDED_ERRORS, SweepMetrics


def test_counters_and_summary():
    metrics = SweepMetrics("reminders")
    metrics.increment("processed", 3)
    metrics.increment("sent")
    metrics.record_failure("act-1", ValueError("bad row"))

    with patch("app.features.automation.services.metrics.log_sweep_summary") as summary:
        metrics.finalize()

    data = metrics.to_dict()
    assert data["sweep"] == "reminders"
    assert data["processed"] == 3
    assert data["sent"] == 1
    assert data["failed"] == 1
    assert data["errors"] == [{"item_id": "act-1", "error": "bad row", "error_type": "ValueError"}]

    args, kwargs = summary.call_args
    assert args == ("reminders",)
    assert kwargs["processed"] == 3
    assert kwargs["failed"] == 1


def test_recorded_errors_are_capped():
    metrics = SweepMetrics("work_email_sync")
    for index in range(MAX_RECORDED_ERRORS + 5):
        metrics.record_failure(f"emp-{index}", RuntimeError("lookup failed"))

    assert metrics.failed == MAX_RECORDED_ERRORS + 5
    assert len(metrics.errors) == MAX_RECORDED_ERRORS
