import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from clock_sync import ClockSynchronizer
from drift_monitor import DriftMonitor
from errors import ActionTargetMissing, RetriesExhausted, SchedulerTimeout
from retry_policy import RetryPolicy
from scheduling_utils import (
    CRITICAL_THRESHOLD_MS,
    FAR_THRESHOLD_MS,
    SystemClock,
    compute_poll_interval_ms,
    format_instant,
    format_remaining,
)
from telemetry import DispatchOutcome, TelemetryRecorder

ROLE_PRIMARY = "primary"
ROLE_BACKUP = "backup"
DEFAULT_SAFETY_MARGIN_MS = 100
DEFAULT_BACKUP_OFFSET_MS = 1000

# Calibration costs a few round trips; skip it when the fire instant is too close.
CALIBRATION_BUDGET_MS = 15_000


class SchedulerState(Enum):
    IDLE = "idle"
    WAITING_FAR = "waiting_far"
    WAITING_NEAR = "waiting_near"
    WAITING_CRITICAL = "waiting_critical"
    ARMED = "armed"
    FIRED = "fired"
    RETRYING = "retrying"
    VERIFIED = "verified"
    DONE = "done"


@dataclass(frozen=True)
class ScheduleTarget:
    target_instant_ms: float
    safety_margin_ms: float = DEFAULT_SAFETY_MARGIN_MS
    role: str = ROLE_PRIMARY
    role_offset_ms: float = 0

    def __post_init__(self) -> None:
        if self.role not in (ROLE_PRIMARY, ROLE_BACKUP):
            raise ValueError(f"Unknown role {self.role!r}")
        if self.safety_margin_ms < 0:
            raise ValueError("Safety margin must not be negative")
        if self.role == ROLE_PRIMARY and self.role_offset_ms != 0:
            raise ValueError("The primary role fires without a role offset")
        if self.role == ROLE_BACKUP and self.role_offset_ms <= 0:
            raise ValueError("The backup role needs a positive role offset")

    @classmethod
    def for_role(
        cls,
        target_instant_ms: float,
        role: str = ROLE_PRIMARY,
        *,
        safety_margin_ms: float = DEFAULT_SAFETY_MARGIN_MS,
        backup_offset_ms: float = DEFAULT_BACKUP_OFFSET_MS,
    ) -> "ScheduleTarget":
        return cls(
            target_instant_ms=target_instant_ms,
            safety_margin_ms=safety_margin_ms,
            role=role,
            role_offset_ms=backup_offset_ms if role == ROLE_BACKUP else 0,
        )

    @property
    def fire_instant_ms(self) -> float:
        return self.target_instant_ms + self.role_offset_ms + self.safety_margin_ms


@dataclass(frozen=True)
class ArmedShot:
    fire_instant_ms: float
    frozen_offset_ms: float
    delay_ms: float


@dataclass(frozen=True)
class ScheduleResult:
    outcome: DispatchOutcome
    actual_fire_time_ms: float
    timing_offset_ms: float
    shot: ArmedShot
    state: SchedulerState


class ActionScheduler:
    """Waits for the fire instant of a :class:`ScheduleTarget` and fires once.

    The remaining time is recomputed on every poll from the synchronizer's
    latest offset, and the poll interval shrinks as the deadline approaches.
    Once armed the offset is frozen: nothing the monitor learns afterwards
    can move the shot.
    """

    def __init__(
        self,
        synchronizer: ClockSynchronizer,
        monitor: DriftMonitor,
        retry_policy: RetryPolicy,
        telemetry: TelemetryRecorder,
        *,
        clock: Optional[SystemClock] = None,
        max_run_ms: Optional[float] = None,
    ) -> None:
        self.synchronizer = synchronizer
        self.monitor = monitor
        self.retry_policy = retry_policy
        self.telemetry = telemetry
        self.clock = clock or SystemClock()
        self.max_run_ms = max_run_ms
        self.state = SchedulerState.IDLE
        self.transitions: List[SchedulerState] = [SchedulerState.IDLE]
        self._deadline_ms: Optional[float] = None

    def remaining_ms(self, target: ScheduleTarget) -> float:
        return target.fire_instant_ms - (self.clock.now_ms() + self.synchronizer.offset_ms)

    def execute(
        self,
        target: ScheduleTarget,
        dispatch: Callable[[float], object],
        read_content: Callable[[], str],
    ) -> ScheduleResult:
        """Wait, fire ``dispatch`` at the fire instant and verify the response.

        ``dispatch`` receives the remaining delay in milliseconds and returns
        once the action has been performed. Raises :class:`RetriesExhausted`
        when every retry is still rejected and :class:`SchedulerTimeout` when
        the run ceiling is reached first.
        """
        shot = self.wait(target)
        outcome = self.fire(target, shot, dispatch)
        actual_fire_time = outcome.fired_at_ms

        def redispatch() -> float:
            self.check_deadline("retrying the submission")
            try:
                dispatch(0)
            except ActionTargetMissing as exc:
                # Only the first dispatch is fatal without a control.
                logging.warning("Retry could not locate the submit control: %s", exc)
            return self.clock.now_ms() + shot.frozen_offset_ms

        try:
            outcome = self.retry_policy.verify(
                outcome,
                redispatch,
                read_content,
                on_rejected=lambda _rejected: self._transition(SchedulerState.RETRYING),
            )
        except (RetriesExhausted, SchedulerTimeout):
            self._transition(SchedulerState.DONE)
            raise

        self._transition(SchedulerState.VERIFIED)
        self._transition(SchedulerState.DONE)
        return ScheduleResult(
            outcome=outcome,
            actual_fire_time_ms=actual_fire_time,
            timing_offset_ms=actual_fire_time - target.target_instant_ms,
            shot=shot,
            state=self.state,
        )

    def wait(self, target: ScheduleTarget) -> ArmedShot:
        if self.state is not SchedulerState.IDLE:
            raise RuntimeError(f"Scheduler already used (state={self.state.value})")

        self.arm_deadline()
        remaining = self.remaining_ms(target)
        if self._deadline_ms is not None:
            budget = self._deadline_ms - self.clock.monotonic_ms()
            if remaining > budget:
                raise SchedulerTimeout(
                    f"Fire instant is {format_remaining(remaining)} away, beyond the "
                    f"{format_remaining(max(0.0, budget))} left of the run ceiling"
                )

        logging.info(
            "Target %s (%s, +%.0fms margin, +%.0fms role offset), fire at %s",
            format_instant(target.target_instant_ms),
            target.role,
            target.safety_margin_ms,
            target.role_offset_ms,
            format_instant(target.fire_instant_ms),
        )

        self.monitor.start()
        calibrated = False
        while True:
            bucket = self._waiting_state(remaining)
            if bucket is not self.state:
                self._transition(bucket)
                if bucket is SchedulerState.WAITING_NEAR and not calibrated and remaining > self._calibration_budget_ms():
                    self.monitor.calibrate()
                    calibrated = True
                    remaining = self.remaining_ms(target)

            # Any correction the monitor makes is read back before deciding.
            self.monitor.tick(remaining, allow_network=bucket is not SchedulerState.WAITING_CRITICAL)
            remaining = self.remaining_ms(target)
            if remaining <= 0:
                break

            self.check_deadline("the fire instant")
            self._log_progress(bucket, remaining)
            self.clock.sleep_ms(compute_poll_interval_ms(remaining))
            remaining = self.remaining_ms(target)

        shot = ArmedShot(
            fire_instant_ms=target.fire_instant_ms,
            frozen_offset_ms=self.synchronizer.offset_ms,
            delay_ms=max(0.0, remaining),
        )
        self._transition(SchedulerState.ARMED)
        self.monitor.persist_drift_telemetry(shot.fire_instant_ms)
        return shot

    def fire(self, target: ScheduleTarget, shot: ArmedShot, dispatch: Callable[[float], object]) -> DispatchOutcome:
        if self.state is not SchedulerState.ARMED:
            raise RuntimeError(f"Cannot fire from state {self.state.value}")

        dispatch(shot.delay_ms)
        actual_fire_time = self.clock.now_ms() + shot.frozen_offset_ms
        timing_offset = actual_fire_time - target.target_instant_ms
        self.telemetry.record_timing_offset(timing_offset)
        self._transition(SchedulerState.FIRED)
        logging.info(
            "Fired at %s (%+.0fms from T-0, offset %+.1fms)",
            format_instant(actual_fire_time),
            timing_offset,
            shot.frozen_offset_ms,
        )
        return DispatchOutcome(fired_at_ms=actual_fire_time, attempt=1)

    def _waiting_state(self, remaining_ms: float) -> SchedulerState:
        if remaining_ms > FAR_THRESHOLD_MS:
            return SchedulerState.WAITING_FAR
        if remaining_ms > CRITICAL_THRESHOLD_MS:
            return SchedulerState.WAITING_NEAR
        return SchedulerState.WAITING_CRITICAL

    def arm_deadline(self) -> None:
        """Start the run ceiling clock. Later calls keep the first deadline."""
        if self.max_run_ms is not None and self._deadline_ms is None:
            self._deadline_ms = self.clock.monotonic_ms() + self.max_run_ms

    def check_deadline(self, phase: str) -> None:
        if self._deadline_ms is not None and self.clock.monotonic_ms() >= self._deadline_ms:
            self._transition(SchedulerState.DONE)
            raise SchedulerTimeout(f"Run ceiling reached before {phase}")

    def _calibration_budget_ms(self) -> float:
        return max(CALIBRATION_BUDGET_MS, self.monitor.calibration_cost_ms())

    def _log_progress(self, bucket: SchedulerState, remaining_ms: float) -> None:
        if bucket is SchedulerState.WAITING_CRITICAL:
            logging.debug("%s until submit", format_remaining(remaining_ms))
        else:
            logging.info("%s until submit", format_remaining(remaining_ms))

    def _transition(self, new_state: SchedulerState) -> None:
        if new_state is self.state:
            return
        logging.info("Scheduler %s -> %s", self.state.value, new_state.value)
        self.state = new_state
        self.transitions.append(new_state)
