import json
import logging

import requests

from clock_sync import ClockSynchronizer, HttpDateReference
from conftest import FakeSession, HangingSession
from drift_monitor import DriftMonitor
from latency_probe import LatencyProbe
from telemetry import TelemetryRecorder


def _monitor(clock, ntp, **kwargs):
    telemetry = TelemetryRecorder()
    synchronizer = ClockSynchronizer(ntp, clock=clock, telemetry=telemetry)
    synchronizer.sync()
    monitor = DriftMonitor(synchronizer, telemetry, clock=clock, **kwargs)
    return monitor, synchronizer, telemetry


def test_resample_waits_for_the_cadence(clock, ntp) -> None:
    monitor, _, telemetry = _monitor(clock, ntp)

    clock.advance(14_000)
    monitor.tick(600_000)
    assert ntp.calls == 1

    clock.advance(1_000)
    monitor.tick(600_000)
    assert ntp.calls == 2
    assert len(telemetry.drift_checks) == 1
    assert telemetry.drift_checks[0].drift_ms == 0
    assert telemetry.drift_checks[0].significant is False


def test_clock_jump_is_adopted_and_reported(clock, ntp, caplog) -> None:
    monitor, synchronizer, telemetry = _monitor(clock, ntp)

    clock.jump(300)
    clock.advance(15_000)
    with caplog.at_level(logging.WARNING):
        state = monitor.tick(600_000)

    assert state.current_offset_ms == -300
    assert synchronizer.offset_ms == -300
    assert telemetry.drift_checks[-1].drift_ms == -300
    assert telemetry.drift_checks[-1].significant is True
    assert "Significant drift detected" in caplog.text


def test_small_drift_is_adopted_without_a_drift_event(clock, ntp, caplog) -> None:
    monitor, synchronizer, telemetry = _monitor(clock, ntp)

    clock.jump(40)
    clock.advance(15_000)
    with caplog.at_level(logging.WARNING):
        monitor.tick(600_000)

    assert synchronizer.offset_ms == -40
    assert telemetry.drift_checks[-1].significant is False
    assert "Significant drift" not in caplog.text


def test_network_work_can_be_suppressed(clock, ntp) -> None:
    monitor, _, telemetry = _monitor(clock, ntp)

    clock.advance(20_000)
    monitor.tick(3_000, allow_network=False)

    assert ntp.calls == 1
    assert telemetry.drift_checks == []


def test_full_sync_runs_on_its_own_cadence(clock, ntp, caplog) -> None:
    monitor, _, _ = _monitor(clock, ntp, drift_check_ms=10**9, full_sync_ms=600_000)

    clock.advance(599_000)
    monitor.tick(3_600_000)
    assert ntp.calls == 1

    clock.advance(1_000)
    with caplog.at_level(logging.INFO):
        monitor.tick(3_600_000)
    assert ntp.calls == 2
    assert "full time re-sync" in caplog.text


def test_unreachable_reference_keeps_previous_offset(clock, ntp) -> None:
    clock.jump(-75)
    monitor, synchronizer, telemetry = _monitor(clock, ntp)

    ntp.fail = True
    clock.advance(15_000)
    monitor.tick(600_000)

    assert synchronizer.offset_ms == 75
    assert synchronizer.state.degraded is True
    assert telemetry.drift_checks == []


def test_drift_records_stay_ordered_when_the_wall_clock_steps_back(clock, ntp) -> None:
    monitor, _, telemetry = _monitor(clock, ntp)

    clock.advance(15_000)
    monitor.tick(600_000)
    clock.jump(-5_000)
    clock.advance(15_000)
    monitor.tick(600_000)

    first, second = telemetry.drift_checks
    assert second.timestamp_ms > first.timestamp_ms
    assert second.drift_ms == 5_000


def test_heartbeat_is_recorded_and_persisted(clock, ntp, artifact_store) -> None:
    monitor, _, telemetry = _monitor(clock, ntp, artifact_store=artifact_store, label="backup")

    clock.advance(120_000)
    monitor.tick(300_000, allow_network=False)

    assert len(telemetry.heartbeats) == 1
    assert telemetry.heartbeats[0].remaining_ms == 300_000
    payload = json.loads(artifact_store.path_for("heartbeat", "application/json").read_text(encoding="utf-8"))
    assert payload["status"] == "running"
    assert payload["instance"] == "backup"
    assert payload["remaining_ms"] == 300_000
    assert "heartbeat" in artifact_store.saved


def test_calibration_records_median_rtt(clock, ntp, artifact_store) -> None:
    probe = LatencyProbe("https://checkin.example.com/", session=FakeSession(clock, [30, 300, 32]), clock=clock)
    monitor, _, telemetry = _monitor(clock, ntp, probe=probe, artifact_store=artifact_store)

    measurement = monitor.calibrate()

    assert measurement.median_rtt_ms == 32
    assert telemetry.calibrated_rtt_ms == 32
    payload = json.loads(artifact_store.path_for("calibrated-rtt", "application/json").read_text(encoding="utf-8"))
    assert payload["samples"] == [30, 300, 32]
    assert payload["adaptive_offset_ms"] == 16


def test_failed_calibration_is_not_fatal(clock, ntp) -> None:
    probe = LatencyProbe(
        "https://checkin.example.com/",
        session=FakeSession(clock, [requests.Timeout("slow")]),
        clock=clock,
    )
    monitor, _, telemetry = _monitor(clock, ntp, probe=probe)

    assert monitor.calibrate() is None
    assert telemetry.calibrated_rtt_ms is None
    assert _monitor(clock, ntp)[0].calibrate() is None


def test_resample_is_skipped_when_it_could_outlast_the_remaining_time(clock, ntp) -> None:
    monitor, _, telemetry = _monitor(clock, ntp)

    clock.advance(15_000)
    monitor.tick(ntp.worst_case_ms)
    assert ntp.calls == 1

    # Still due on the next poll once there is room for a timeout.
    clock.advance(1_000)
    monitor.tick(ntp.worst_case_ms + 1_000)
    assert ntp.calls == 2
    assert len(telemetry.drift_checks) == 1


def test_full_sync_is_budgeted_for_the_whole_chain(clock, ntp) -> None:
    latency = LatencyProbe("https://checkin.example.com/", session=FakeSession(clock), clock=clock)
    telemetry = TelemetryRecorder()
    synchronizer = ClockSynchronizer(ntp, HttpDateReference(latency), clock=clock, telemetry=telemetry)
    synchronizer.sync()
    monitor = DriftMonitor(synchronizer, telemetry, clock=clock, drift_check_ms=10**9)

    assert synchronizer.worst_case_ms() == 3_000
    assert synchronizer.worst_case_ms(full=True) == 12_000

    clock.advance(600_000)
    monitor.tick(11_000)
    assert ntp.calls == 1

    monitor.tick(13_000)
    assert ntp.calls == 2


def test_hanging_fallback_is_not_resampled_near_the_deadline(clock, ntp) -> None:
    ntp.fail = True
    session = HangingSession(clock, healthy=3)
    latency = LatencyProbe("https://checkin.example.com/", session=session, clock=clock)
    telemetry = TelemetryRecorder()
    synchronizer = ClockSynchronizer(ntp, HttpDateReference(latency), clock=clock, telemetry=telemetry)
    synchronizer.sync()
    monitor = DriftMonitor(synchronizer, telemetry, probe=latency, clock=clock)
    assert synchronizer.state.method == "fallback+rtt"

    clock.advance(15_000)
    monitor.tick(5_100)
    assert session.calls == 3
    assert monitor.calibration_cost_ms() == 9_000


def test_drift_telemetry_is_persisted(clock, ntp, artifact_store) -> None:
    monitor, _, _ = _monitor(clock, ntp, artifact_store=artifact_store)
    clock.jump(250)
    clock.advance(15_000)
    monitor.tick(600_000)

    monitor.persist_drift_telemetry(clock.true_ms() + 60_000)

    payload = json.loads(artifact_store.path_for("drift-telemetry", "application/json").read_text(encoding="utf-8"))
    assert payload["final_drift_ms"] == -250
    assert payload["drift_checks"][0]["significant"] is True
    assert payload["sync_method"] == "ntp"
    assert payload["target_submit_time"].startswith("2026-01-01T00:01:15")
