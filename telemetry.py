from dataclasses import asdict, dataclass, field
from typing import List, Optional, Tuple

from scheduling_utils import format_instant


@dataclass(frozen=True)
class ClockSample:
    local_timestamp_ms: float
    reference_timestamp_ms: float
    offset_ms: float
    rtt_ms: Optional[float]
    source: str
    degraded: bool = False


@dataclass(frozen=True)
class DriftRecord:
    timestamp_ms: float
    drift_ms: float
    rtt_ms: Optional[float]
    significant: bool = False


@dataclass(frozen=True)
class DispatchOutcome:
    fired_at_ms: float
    rejected: bool = False
    attempt: int = 1


@dataclass(frozen=True)
class Heartbeat:
    timestamp_ms: float
    remaining_ms: float
    offset_ms: float


@dataclass(frozen=True)
class TelemetryReport:
    samples: Tuple[ClockSample, ...] = ()
    drift_checks: Tuple[DriftRecord, ...] = ()
    heartbeats: Tuple[Heartbeat, ...] = ()
    outcomes: Tuple[DispatchOutcome, ...] = ()
    calibrated_rtt_ms: Optional[float] = None
    timing_offset_ms: Optional[float] = None

    @property
    def retry_count(self) -> int:
        return max(0, len(self.outcomes) - 1)

    @property
    def sync_succeeded(self) -> bool:
        return any(sample.source == "ntp" and not sample.degraded for sample in self.samples)

    @property
    def sync_method(self) -> Optional[str]:
        return self.samples[-1].source if self.samples else None

    @property
    def local_drift_ms(self) -> Optional[float]:
        ntp_samples = [sample for sample in self.samples if sample.source == "ntp" and not sample.degraded]
        if not ntp_samples:
            return None
        return ntp_samples[-1].offset_ms

    @property
    def rtt_ms(self) -> Optional[float]:
        for sample in reversed(self.samples):
            if sample.rtt_ms is not None:
                return sample.rtt_ms
        return None

    def to_dict(self) -> dict:
        return {
            "sync_succeeded": self.sync_succeeded,
            "local_drift_ms": self.local_drift_ms,
            "rtt_ms": self.rtt_ms,
            "calibrated_rtt_ms": self.calibrated_rtt_ms,
            "sync_method": self.sync_method,
            "drift_checks": [
                {
                    "timestamp": format_instant(record.timestamp_ms),
                    "drift_ms": record.drift_ms,
                    "rtt_ms": record.rtt_ms,
                    "significant": record.significant,
                }
                for record in self.drift_checks
            ],
            "heartbeats": [asdict(beat) for beat in self.heartbeats],
            "retry_count": self.retry_count,
            "timing_offset_ms": self.timing_offset_ms,
        }


@dataclass
class TelemetryRecorder:
    """Collects every sync, drift check and dispatch of a run.

    The recorder only accumulates; corrective decisions live with the callers.
    """

    samples: List[ClockSample] = field(default_factory=list)
    drift_checks: List[DriftRecord] = field(default_factory=list)
    heartbeats: List[Heartbeat] = field(default_factory=list)
    outcomes: List[DispatchOutcome] = field(default_factory=list)
    calibrated_rtt_ms: Optional[float] = None
    timing_offset_ms: Optional[float] = None

    def record_sample(self, sample: ClockSample) -> None:
        self.samples.append(sample)

    def record_drift(self, record: DriftRecord) -> None:
        if self.drift_checks and record.timestamp_ms < self.drift_checks[-1].timestamp_ms:
            raise ValueError("Drift records must be appended in timestamp order")
        self.drift_checks.append(record)

    def record_heartbeat(self, heartbeat: Heartbeat) -> None:
        self.heartbeats.append(heartbeat)

    def record_outcome(self, outcome: DispatchOutcome) -> None:
        self.outcomes.append(outcome)

    def record_calibration(self, median_rtt_ms: float) -> None:
        self.calibrated_rtt_ms = median_rtt_ms

    def record_timing_offset(self, timing_offset_ms: float) -> None:
        self.timing_offset_ms = timing_offset_ms

    def report(self) -> TelemetryReport:
        return TelemetryReport(
            samples=tuple(self.samples),
            drift_checks=tuple(self.drift_checks),
            heartbeats=tuple(self.heartbeats),
            outcomes=tuple(self.outcomes),
            calibrated_rtt_ms=self.calibrated_rtt_ms,
            timing_offset_ms=self.timing_offset_ms,
        )
