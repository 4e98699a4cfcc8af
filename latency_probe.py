import logging
import statistics
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from typing import Optional, Tuple

import requests

from errors import ProbeTimeout
from scheduling_utils import SystemClock


@dataclass(frozen=True)
class ProbeSample:
    rtt_ms: float
    received_at_ms: float
    server_date_ms: Optional[float] = None


@dataclass(frozen=True)
class LatencyMeasurement:
    median_rtt_ms: float
    raw: Tuple[float, ...]
    samples: Tuple[ProbeSample, ...] = ()
    endpoint: str = ""

    @property
    def one_way_ms(self) -> float:
        return self.median_rtt_ms / 2.0

    def median_sample(self) -> ProbeSample:
        for sample in self.samples:
            if sample.rtt_ms == self.median_rtt_ms:
                return sample
        raise LookupError("Median sample is not part of this measurement")


def _parse_date_header(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return parsedate_to_datetime(value).timestamp() * 1000.0
    except (TypeError, ValueError):
        logging.debug("Ignoring unparseable Date header: %r", value)
        return None


class LatencyProbe:
    """Round-trip timing against the target service.

    Every sample is a ``HEAD`` request on a shared session so that DNS, TCP and
    TLS set-up are paid once and later samples measure the steady state. The
    reported figure is the median of the successful samples, which keeps a
    single congested round trip from skewing the correction.
    """

    def __init__(
        self,
        endpoint: str,
        *,
        session: Optional[requests.Session] = None,
        timeout_seconds: float = 3.0,
        clock: Optional[SystemClock] = None,
    ) -> None:
        self.endpoint = endpoint
        self.session = session or requests.Session()
        self.timeout_seconds = timeout_seconds
        self.clock = clock or SystemClock()

    def worst_case_ms(self, samples: int = 3) -> float:
        """Longest ``measure(samples=samples)`` can block when every sample times out."""
        return max(1, samples) * self.timeout_seconds * 1000.0

    def round_trip(self, url: Optional[str] = None) -> ProbeSample:
        target = url or self.endpoint
        started = self.clock.monotonic_ms()
        try:
            response = self.session.head(target, timeout=self.timeout_seconds, allow_redirects=False)
        except requests.Timeout as exc:
            raise ProbeTimeout(f"Round trip to {target} timed out after {self.timeout_seconds}s") from exc
        except requests.RequestException as exc:
            raise ProbeTimeout(f"Round trip to {target} failed: {exc}") from exc

        finished = self.clock.monotonic_ms()
        received_at = self.clock.now_ms()
        try:
            server_date = _parse_date_header(response.headers.get("Date"))
        finally:
            response.close()

        rtt_ms = finished - started
        if rtt_ms > self.timeout_seconds * 1000.0:
            raise ProbeTimeout(f"Round trip to {target} took {rtt_ms:.0f}ms (limit {self.timeout_seconds}s)")
        return ProbeSample(rtt_ms=rtt_ms, received_at_ms=received_at, server_date_ms=server_date)

    def measure(self, endpoint: Optional[str] = None, samples: int = 3) -> LatencyMeasurement:
        target = endpoint or self.endpoint
        collected = []
        for index in range(1, max(1, samples) + 1):
            try:
                collected.append(self.round_trip(target))
            except ProbeTimeout as exc:
                logging.debug("Latency sample %s/%s discarded: %s", index, samples, exc)

        if not collected:
            raise ProbeTimeout(f"All {samples} latency samples to {target} failed")

        raw = tuple(sample.rtt_ms for sample in collected)
        median_rtt = statistics.median_high(raw)
        logging.info(
            "RTT samples to %s: %s ms (median %.1f ms)",
            target,
            ", ".join(f"{value:.0f}" for value in raw),
            median_rtt,
        )
        return LatencyMeasurement(
            median_rtt_ms=median_rtt,
            raw=raw,
            samples=tuple(collected),
            endpoint=target,
        )

    def warm_up(self) -> bool:
        try:
            self.round_trip()
        except ProbeTimeout as exc:
            logging.warning("Session pre-warm failed (non-critical): %s", exc)
            return False
        logging.info("Session to %s pre-warmed (DNS, TCP, TLS cached)", self.endpoint)
        return True
