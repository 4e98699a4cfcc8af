import logging
from dataclasses import dataclass
from typing import List, Optional

import ntplib

from errors import ProbeTimeout, SyncUnavailable
from latency_probe import LatencyProbe
from scheduling_utils import SystemClock
from telemetry import ClockSample, TelemetryRecorder

METHOD_NTP = "ntp"
METHOD_FALLBACK = "fallback+rtt"
METHOD_LAST_KNOWN = "last-known"
METHOD_NONE = "none"


@dataclass(frozen=True)
class SyncState:
    current_offset_ms: float = 0.0
    last_sync_at_ms: Optional[float] = None
    method: str = METHOD_NONE
    degraded: bool = True


class NtpTimeReference:
    """Primary reference: a single SNTP exchange with a public time server."""

    name = METHOD_NTP

    def __init__(
        self,
        server: str = "time.google.com",
        *,
        port: int = 123,
        timeout_seconds: float = 3.0,
        clock: Optional[SystemClock] = None,
        client: Optional[ntplib.NTPClient] = None,
    ) -> None:
        self.server = server
        self.port = port
        self.timeout_seconds = timeout_seconds
        self.clock = clock or SystemClock()
        self.client = client or ntplib.NTPClient()

    @property
    def worst_case_ms(self) -> float:
        return self.timeout_seconds * 1000.0

    def query(self) -> ClockSample:
        local_ms = self.clock.now_ms()
        try:
            response = self.client.request(self.server, version=3, port=self.port, timeout=self.timeout_seconds)
        except (ntplib.NTPException, OSError) as exc:
            raise SyncUnavailable(f"NTP server {self.server} unavailable: {exc}") from exc

        # ntplib already splits the path delay symmetrically into the offset.
        offset_ms = response.offset * 1000.0
        return ClockSample(
            local_timestamp_ms=local_ms,
            reference_timestamp_ms=local_ms + offset_ms,
            offset_ms=offset_ms,
            rtt_ms=response.delay * 1000.0,
            source=self.name,
        )


class HttpDateReference:
    """Fallback reference: the target service's ``Date`` header plus one-way latency."""

    name = METHOD_FALLBACK

    def __init__(self, probe: LatencyProbe, *, samples: int = 3) -> None:
        self.probe = probe
        self.samples = samples

    @property
    def worst_case_ms(self) -> float:
        return self.probe.worst_case_ms(self.samples)

    def query(self) -> ClockSample:
        try:
            measurement = self.probe.measure(samples=self.samples)
        except ProbeTimeout as exc:
            raise SyncUnavailable(f"Target service time unavailable: {exc}") from exc

        sample = measurement.median_sample()
        if sample.server_date_ms is None:
            raise SyncUnavailable(f"{measurement.endpoint} returned no usable Date header")

        reference_ms = sample.server_date_ms + measurement.one_way_ms
        return ClockSample(
            local_timestamp_ms=sample.received_at_ms,
            reference_timestamp_ms=reference_ms,
            offset_ms=reference_ms - sample.received_at_ms,
            rtt_ms=measurement.median_rtt_ms,
            source=self.name,
        )


class ClockSynchronizer:
    """Maintains the offset between the local clock and true time.

    ``sync()`` walks the reference chain from the primary down and never
    raises: when every reference fails it republishes the last good offset,
    or zero if there never was one, and marks the state as degraded.
    """

    def __init__(
        self,
        primary,
        fallback=None,
        *,
        clock: Optional[SystemClock] = None,
        telemetry: Optional[TelemetryRecorder] = None,
    ) -> None:
        self.references: List = [ref for ref in (primary, fallback) if ref is not None]
        self.clock = clock or SystemClock()
        self.telemetry = telemetry
        self.state = SyncState()
        self._last_good: Optional[ClockSample] = None

    @property
    def offset_ms(self) -> float:
        return self.state.current_offset_ms

    def now_ms(self) -> float:
        return self.clock.now_ms() + self.state.current_offset_ms

    def sync(self) -> ClockSample:
        for reference in self.references:
            sample = self._query(reference)
            if sample is not None:
                return self._publish(sample)
        return self._publish(self._degraded_sample())

    def resample(self) -> ClockSample:
        """Re-consult only the reference behind the current state."""
        reference = self._reference_named(self.state.method)
        if reference is None:
            return self.sync()
        sample = self._query(reference)
        if sample is None:
            sample = self._degraded_sample()
        return self._publish(sample)

    def worst_case_ms(self, *, full: bool = False) -> float:
        """Longest ``sync()`` (``full``) or ``resample()`` can block on the network."""
        reference = None if full else self._reference_named(self.state.method)
        chain = [reference] if reference is not None else self.references
        return sum(ref.worst_case_ms for ref in chain)

    def _reference_named(self, name: str):
        for reference in self.references:
            if reference.name == name:
                return reference
        return None

    def _query(self, reference) -> Optional[ClockSample]:
        try:
            return reference.query()
        except SyncUnavailable as exc:
            logging.warning("Time reference %s failed: %s", reference.name, exc)
            return None

    def _degraded_sample(self) -> ClockSample:
        local_ms = self.clock.now_ms()
        if self._last_good is not None:
            offset_ms, source = self._last_good.offset_ms, METHOD_LAST_KNOWN
        else:
            offset_ms, source = 0.0, METHOD_NONE
        logging.warning("All time references failed; using %s offset %.1fms", source, offset_ms)
        return ClockSample(
            local_timestamp_ms=local_ms,
            reference_timestamp_ms=local_ms + offset_ms,
            offset_ms=offset_ms,
            rtt_ms=None,
            source=source,
            degraded=True,
        )

    def _publish(self, sample: ClockSample) -> ClockSample:
        if not sample.degraded:
            self._last_good = sample
            logging.info(
                "Clock sync via %s: offset %+.1fms%s",
                sample.source,
                sample.offset_ms,
                f" (rtt {sample.rtt_ms:.0f}ms)" if sample.rtt_ms is not None else "",
            )
        self.state = SyncState(
            current_offset_ms=sample.offset_ms,
            last_sync_at_ms=sample.local_timestamp_ms,
            method=sample.source,
            degraded=sample.degraded,
        )
        if self.telemetry is not None:
            self.telemetry.record_sample(sample)
        return sample
