import logging
from dataclasses import replace
from typing import Callable, Iterable, Optional

from errors import RejectedTooEarly, RetriesExhausted
from scheduling_utils import SystemClock
from telemetry import DispatchOutcome, TelemetryRecorder

REJECTION_MARKERS = ("too early", "come back")
EXHAUSTED_MESSAGE = "check-in not yet open"


class RetryPolicy:
    """Fixed-interval re-submission while the site still answers "too early".

    The window opens within milliseconds of the first attempt, so retries are
    spaced by a constant interval rather than backing off. ``max_retries``
    counts re-dispatches; the first attempt is not a retry.
    """

    def __init__(
        self,
        *,
        max_retries: int = 5,
        interval_ms: float = 150,
        markers: Iterable[str] = REJECTION_MARKERS,
        clock: Optional[SystemClock] = None,
        telemetry: Optional[TelemetryRecorder] = None,
    ) -> None:
        self.max_retries = max(0, max_retries)
        self.interval_ms = interval_ms
        self.markers = tuple(marker.lower() for marker in markers)
        self.clock = clock or SystemClock()
        self.telemetry = telemetry

    def inspect(self, content: str) -> None:
        lowered = (content or "").lower()
        for marker in self.markers:
            if marker in lowered:
                raise RejectedTooEarly(f'Response contains "{marker}"')

    def is_rejection(self, content: str) -> bool:
        try:
            self.inspect(content)
        except RejectedTooEarly:
            return True
        return False

    def verify(
        self,
        outcome: DispatchOutcome,
        redispatch: Callable[[], float],
        read_content: Callable[[], str],
        *,
        on_rejected: Optional[Callable[[DispatchOutcome], None]] = None,
    ) -> DispatchOutcome:
        current = outcome
        retries = 0
        while True:
            self.clock.sleep_ms(self.interval_ms)
            try:
                self.inspect(read_content())
            except RejectedTooEarly as exc:
                rejected = replace(current, rejected=True)
                self._record(rejected)
                if retries >= self.max_retries:
                    logging.error("Still rejected after %s retries: %s", retries, exc)
                    raise RetriesExhausted(EXHAUSTED_MESSAGE, retries) from exc

                retries += 1
                if on_rejected is not None:
                    on_rejected(rejected)
                logging.warning('Response indicates "too early", retry %s/%s', retries, self.max_retries)
                current = DispatchOutcome(fired_at_ms=redispatch(), attempt=current.attempt + 1)
                continue

            accepted = replace(current, rejected=False)
            self._record(accepted)
            logging.info("Submission accepted on attempt %s (no \"too early\" message)", accepted.attempt)
            return accepted

    def _record(self, outcome: DispatchOutcome) -> None:
        if self.telemetry is not None:
            self.telemetry.record_outcome(outcome)
