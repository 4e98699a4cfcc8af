import pytest

from conftest import EPOCH_2026_MS
from telemetry import ClockSample, DispatchOutcome, DriftRecord, Heartbeat, TelemetryRecorder


def test_report_summarises_the_run() -> None:
    recorder = TelemetryRecorder()
    recorder.record_sample(ClockSample(EPOCH_2026_MS, EPOCH_2026_MS + 42, 42, 18, "ntp"))
    recorder.record_sample(ClockSample(EPOCH_2026_MS + 15_000, EPOCH_2026_MS + 15_042, 42, None, "last-known", True))
    recorder.record_drift(DriftRecord(EPOCH_2026_MS + 15_000, 3, 18))
    recorder.record_heartbeat(Heartbeat(EPOCH_2026_MS + 120_000, 60_000, 42))
    recorder.record_calibration(36)
    recorder.record_timing_offset(104)
    recorder.record_outcome(DispatchOutcome(EPOCH_2026_MS, rejected=True))
    recorder.record_outcome(DispatchOutcome(EPOCH_2026_MS + 150, attempt=2))

    report = recorder.report().to_dict()

    assert report["sync_succeeded"] is True
    assert report["sync_method"] == "last-known"
    assert report["local_drift_ms"] == 42
    assert report["rtt_ms"] == 18
    assert report["calibrated_rtt_ms"] == 36
    assert report["timing_offset_ms"] == 104
    assert report["retry_count"] == 1
    assert report["drift_checks"] == [
        {"timestamp": "2026-01-01T00:00:15.000+00:00", "drift_ms": 3, "rtt_ms": 18, "significant": False}
    ]
    assert report["heartbeats"][0]["remaining_ms"] == 60_000


def test_empty_report() -> None:
    report = TelemetryRecorder().report()

    assert report.retry_count == 0
    assert report.sync_succeeded is False
    assert report.sync_method is None
    assert report.local_drift_ms is None
    assert report.to_dict()["drift_checks"] == []


def test_fallback_only_run_is_not_a_successful_ntp_sync() -> None:
    recorder = TelemetryRecorder()
    recorder.record_sample(ClockSample(EPOCH_2026_MS, EPOCH_2026_MS + 20, 20, 40, "fallback+rtt"))

    report = recorder.report()

    assert report.sync_succeeded is False
    assert report.sync_method == "fallback+rtt"
    assert report.local_drift_ms is None


def test_drift_records_must_be_in_order() -> None:
    recorder = TelemetryRecorder()
    recorder.record_drift(DriftRecord(EPOCH_2026_MS + 30_000, 1, 10))

    with pytest.raises(ValueError):
        recorder.record_drift(DriftRecord(EPOCH_2026_MS + 15_000, 1, 10))


def test_report_is_a_snapshot() -> None:
    recorder = TelemetryRecorder()
    report = recorder.report()
    recorder.record_outcome(DispatchOutcome(EPOCH_2026_MS))

    assert report.outcomes == ()
    assert len(recorder.report().outcomes) == 1
