import json
import logging
from typing import Optional

from clock_sync import ClockSynchronizer, SyncState
from errors import ProbeTimeout
from latency_probe import LatencyMeasurement, LatencyProbe
from scheduling_utils import SystemClock, format_instant, format_remaining
from telemetry import DriftRecord, Heartbeat, TelemetryRecorder


class DriftMonitor:
    """Keeps the synchronizer's offset fresh while the scheduler waits.

    There is no background thread: the scheduler calls :meth:`tick` on every
    poll and the monitor decides from its cadences whether any work is due.
    A new sample is always adopted as-is; the drift threshold only decides
    whether the change is reported as a drift event.
    """

    def __init__(
        self,
        synchronizer: ClockSynchronizer,
        telemetry: TelemetryRecorder,
        *,
        probe: Optional[LatencyProbe] = None,
        clock: Optional[SystemClock] = None,
        artifact_store=None,
        drift_check_ms: float = 15_000,
        full_sync_ms: float = 600_000,
        heartbeat_ms: float = 120_000,
        drift_threshold_ms: float = 100,
        calibration_samples: int = 3,
        label: str = "primary",
    ) -> None:
        self.synchronizer = synchronizer
        self.telemetry = telemetry
        self.probe = probe
        self.clock = clock or SystemClock()
        self.artifact_store = artifact_store
        self.drift_check_ms = drift_check_ms
        self.full_sync_ms = full_sync_ms
        self.heartbeat_ms = heartbeat_ms
        self.drift_threshold_ms = drift_threshold_ms
        self.calibration_samples = calibration_samples
        self.label = label
        self.start()

    def start(self) -> None:
        now = self.clock.monotonic_ms()
        self._anchor_wall_ms = self.clock.now_ms()
        self._anchor_mono_ms = now
        self._last_check_ms = now
        self._last_full_sync_ms = now
        self._last_heartbeat_ms = now

    def tick(self, remaining_ms: float, *, allow_network: bool = True) -> SyncState:
        now = self.clock.monotonic_ms()

        if now - self._last_heartbeat_ms >= self.heartbeat_ms:
            self._heartbeat(remaining_ms)
            self._last_heartbeat_ms = now

        if not allow_network:
            return self.synchronizer.state

        full = now - self._last_full_sync_ms >= self.full_sync_ms
        if not full and now - self._last_check_ms < self.drift_check_ms:
            return self.synchronizer.state

        # A reference that hangs until its timeout must still finish before the fire instant.
        cost_ms = self.synchronizer.worst_case_ms(full=full)
        if remaining_ms <= cost_ms:
            logging.debug(
                "Skipping %s: worst case %.0fms, %.0fms left",
                "full re-sync" if full else "drift check",
                cost_ms,
                remaining_ms,
            )
            return self.synchronizer.state

        if full:
            logging.info("Performing periodic full time re-sync")
        self._resync(full=full)
        self._last_check_ms = self.clock.monotonic_ms()
        if full:
            self._last_full_sync_ms = self._last_check_ms
        return self.synchronizer.state

    def calibration_cost_ms(self) -> float:
        if self.probe is None:
            return 0.0
        return self.probe.worst_case_ms(self.calibration_samples)

    def calibrate(self) -> Optional[LatencyMeasurement]:
        if self.probe is None:
            return None
        try:
            measurement = self.probe.measure(samples=self.calibration_samples)
        except ProbeTimeout as exc:
            logging.warning("Latency calibration failed; keeping previous figures: %s", exc)
            return None

        self.telemetry.record_calibration(measurement.median_rtt_ms)
        logging.info(
            "Calibrated median RTT %.1fms, one-way compensation %.1fms",
            measurement.median_rtt_ms,
            measurement.one_way_ms,
        )
        self._persist(
            "calibrated-rtt",
            {
                "timestamp": format_instant(self._stamp()),
                "median_rtt_ms": measurement.median_rtt_ms,
                "samples": list(measurement.raw),
                "adaptive_offset_ms": measurement.one_way_ms,
            },
        )
        return measurement

    def _resync(self, *, full: bool) -> None:
        previous = self.synchronizer.state
        sample = self.synchronizer.sync() if full else self.synchronizer.resample()
        if sample.degraded:
            logging.warning("Drift check could not reach a time reference; retaining offset %.1fms", sample.offset_ms)
            return

        drift_ms = sample.offset_ms - previous.current_offset_ms
        significant = abs(drift_ms) > self.drift_threshold_ms
        if significant:
            logging.warning("Significant drift detected: %+.1fms, adopting new offset %+.1fms", drift_ms, sample.offset_ms)
        else:
            logging.debug("Drift check: %+.1fms (rtt %s)", drift_ms, sample.rtt_ms)

        self.telemetry.record_drift(
            DriftRecord(
                timestamp_ms=self._stamp(),
                drift_ms=drift_ms,
                rtt_ms=sample.rtt_ms,
                significant=significant,
            )
        )

    def persist_drift_telemetry(self, fire_instant_ms: float) -> None:
        """Write the drift history as it stood when the shot was armed."""
        checks = list(self.telemetry.drift_checks)
        state = self.synchronizer.state
        self._persist(
            "drift-telemetry",
            {
                "timestamp": format_instant(self._stamp()),
                "drift_checks": [
                    {
                        "timestamp": format_instant(record.timestamp_ms),
                        "drift_ms": record.drift_ms,
                        "rtt_ms": record.rtt_ms,
                        "significant": record.significant,
                    }
                    for record in checks
                ],
                "final_drift_ms": checks[-1].drift_ms if checks else 0.0,
                "offset_ms": state.current_offset_ms,
                "sync_method": state.method,
                "target_submit_time": format_instant(fire_instant_ms),
            },
        )

    def _heartbeat(self, remaining_ms: float) -> None:
        state = self.synchronizer.state
        beat = Heartbeat(timestamp_ms=self._stamp(), remaining_ms=remaining_ms, offset_ms=state.current_offset_ms)
        self.telemetry.record_heartbeat(beat)
        logging.info("Heartbeat: system healthy, %s until submit", format_remaining(remaining_ms))
        self._persist(
            "heartbeat",
            {
                "timestamp": format_instant(beat.timestamp_ms),
                "status": "running",
                "remaining_ms": remaining_ms,
                "instance": self.label,
                "offset_ms": state.current_offset_ms,
                "sync_method": state.method,
            },
        )

    def _stamp(self) -> float:
        # Wall time anchored at start and advanced by the monotonic clock, so
        # record timestamps never run backwards when the system clock steps.
        return self._anchor_wall_ms + (self.clock.monotonic_ms() - self._anchor_mono_ms)

    def _persist(self, name: str, payload: dict) -> None:
        if self.artifact_store is None:
            return
        self.artifact_store.save(name, json.dumps(payload, indent=2), "application/json")
