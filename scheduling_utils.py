import time
from datetime import datetime, timezone

FAR_THRESHOLD_MS = 60_000
CRITICAL_THRESHOLD_MS = 5_000

FAR_POLL_MS = 5_000
NEAR_POLL_MS = 1_000
CRITICAL_POLL_MS = 100


class SystemClock:
    """Wall clock for offsets, monotonic clock for durations."""

    def now_ms(self) -> float:
        return time.time() * 1000.0

    def monotonic_ms(self) -> float:
        return time.perf_counter() * 1000.0

    def sleep_ms(self, duration_ms: float) -> None:
        if duration_ms > 0:
            time.sleep(duration_ms / 1000.0)


def compute_poll_interval_ms(remaining_ms: float) -> float:
    if remaining_ms > FAR_THRESHOLD_MS:
        interval = FAR_POLL_MS
    elif remaining_ms > CRITICAL_THRESHOLD_MS:
        interval = NEAR_POLL_MS
    else:
        interval = CRITICAL_POLL_MS

    # Never sleep past the deadline itself.
    return max(0.0, min(float(interval), remaining_ms))


def parse_instant_ms(value: str) -> float:
    """Parse an ISO-8601 instant into epoch milliseconds.

    Naive timestamps are treated as UTC, a trailing ``Z`` is accepted.
    """
    text = str(value).strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp() * 1000.0


def format_instant(epoch_ms: float) -> str:
    return datetime.fromtimestamp(epoch_ms / 1000.0, tz=timezone.utc).isoformat(timespec="milliseconds")


def format_remaining(remaining_ms: float) -> str:
    seconds = max(0, int(remaining_ms // 1000))
    minutes, seconds = divmod(seconds, 60)
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{remaining_ms / 1000:.1f}s"
