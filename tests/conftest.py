from email.utils import formatdate
from pathlib import Path
import sys
from typing import List, Optional, Sequence

import pytest
import requests

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from errors import ActionTargetMissing, SyncUnavailable
from page_automation import ArtifactStore
from telemetry import ClockSample

# 2026-01-01T00:00:00Z
EPOCH_2026_MS = 1_767_225_600_000.0


class FakeClock:
    """Deterministic clock: sleeping advances time exactly.

    ``true_ms`` is the reference time; the local wall clock may be skewed from
    it (``skew_ms``) and stepped with :meth:`jump` to simulate drift.
    """

    def __init__(self, start_ms: float = EPOCH_2026_MS, skew_ms: float = 0.0) -> None:
        self._true_ms = start_ms
        self._mono_ms = 0.0
        self.skew_ms = skew_ms
        self.sleeps: List[float] = []

    def now_ms(self) -> float:
        return self._true_ms + self.skew_ms

    def monotonic_ms(self) -> float:
        return self._mono_ms

    def true_ms(self) -> float:
        return self._true_ms

    def sleep_ms(self, duration_ms: float) -> None:
        self.sleeps.append(duration_ms)
        if duration_ms > 0:
            self.advance(duration_ms)

    def advance(self, duration_ms: float) -> None:
        self._true_ms += duration_ms
        self._mono_ms += duration_ms

    def jump(self, delta_ms: float) -> None:
        self.skew_ms += delta_ms


class FakeNtpReference:
    name = "ntp"
    worst_case_ms = 3_000.0

    def __init__(self, clock: FakeClock, *, rtt_ms: float = 20.0, error_ms: float = 0.0) -> None:
        self.clock = clock
        self.rtt_ms = rtt_ms
        self.error_ms = error_ms
        self.fail = False
        self.calls = 0

    def query(self) -> ClockSample:
        self.calls += 1
        if self.fail:
            raise SyncUnavailable("NTP server unreachable")
        local = self.clock.now_ms()
        offset = self.clock.true_ms() - local + self.error_ms
        return ClockSample(local, local + offset, offset, self.rtt_ms, "ntp")


class FakeResponse:
    def __init__(self, headers: dict) -> None:
        self.headers = headers
        self.closed = False

    def close(self) -> None:
        self.closed = True


class FakeSession:
    """Answers HEAD requests after ``rtts[i]`` ms with a whole-second Date header.

    An entry that is an exception instance is raised instead.
    """

    def __init__(self, clock: FakeClock, rtts: Sequence = (40,), *, date_header: bool = True) -> None:
        self.clock = clock
        self.rtts = list(rtts)
        self.date_header = date_header
        self.calls = 0

    def head(self, url, timeout=None, allow_redirects=True):
        step = self.rtts[self.calls % len(self.rtts)]
        self.calls += 1
        if isinstance(step, Exception):
            raise step
        self.clock.advance(step)
        headers = {}
        if self.date_header:
            headers["Date"] = formatdate(self.clock.true_ms() / 1000.0, usegmt=True)
        return FakeResponse(headers)


class HangingSession(FakeSession):
    """Answers ``healthy`` requests normally, then every request hangs until its timeout."""

    def __init__(self, clock: FakeClock, healthy: int, rtts: Sequence = (40,)) -> None:
        super().__init__(clock, rtts)
        self.healthy = healthy

    def head(self, url, timeout=None, allow_redirects=True):
        if self.calls < self.healthy:
            return super().head(url, timeout=timeout, allow_redirects=allow_redirects)
        self.calls += 1
        self.clock.advance(timeout * 1000.0)
        raise requests.Timeout(f"no answer within {timeout}s")


class FakePage:
    SUBMIT_SELECTORS = [("css selector", "button[type='submit']")]

    def __init__(
        self,
        clock: FakeClock,
        responses: Sequence[str] = ("Boarding position: A12",),
        *,
        missing_button: bool = False,
        dispatch_cost_ms: float = 0.0,
    ) -> None:
        self.clock = clock
        self.responses = list(responses)
        self.missing_button = missing_button
        self.dispatch_cost_ms = dispatch_cost_ms
        self.dispatches: List[float] = []
        self.true_dispatches: List[float] = []
        self.delays: List[float] = []
        self.captures: List[str] = []
        self.filled: Optional[tuple] = None
        self.visited: List[str] = []
        self.closed = False

    def navigate(self, url: str) -> None:
        self.visited.append(url)

    def wait_for_form(self) -> None:
        return None

    def fill_form(self, confirmation_number: str, first_name: str, last_name: str) -> None:
        self.filled = (confirmation_number, first_name, last_name)

    def dispatch_action(self, selectors=None, delay_ms: float = 0) -> dict:
        if self.missing_button:
            raise ActionTargetMissing("Submit control unavailable: Button not found")
        self.delays.append(delay_ms)
        self.clock.sleep_ms(delay_ms + self.dispatch_cost_ms)
        self.dispatches.append(self.clock.now_ms())
        self.true_dispatches.append(self.clock.true_ms())
        return {"clicked": True, "delay": delay_ms}

    def read_content(self) -> str:
        index = min(max(len(self.dispatches) - 1, 0), len(self.responses) - 1)
        return self.responses[index]

    def page_source(self) -> str:
        return f"<html><body>{self.read_content()}</body></html>"

    def capture_artifact(self, kind: str) -> str:
        self.captures.append(kind)
        return f"screenshot-{kind}"

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ntp(clock: FakeClock) -> FakeNtpReference:
    return FakeNtpReference(clock)


@pytest.fixture
def artifact_store(tmp_path: Path) -> ArtifactStore:
    return ArtifactStore(tmp_path / "artifacts", run_id="test-run")


@pytest.fixture
def timeout_error() -> requests.Timeout:
    return requests.Timeout("timed out")
