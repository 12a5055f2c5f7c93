from datetime import datetime, timezone
from typing import Optional
import re
import time

# e.g., "20s", "5m", "1h30m", "2d3h", "90m", "  2h  ", "500ms"
DELAY_RE = re.compile(
    r"(?i)^\s*(?:(\d+)\s*d)?\s*(?:(\d+)\s*h)?\s*(?:(\d+)\s*m(?!s))?\s*(?:(\d+)\s*s)?\s*(?:(\d+)\s*ms)?\s*$"
)


def parse_delay_to_ms(s: str) -> int:
    """
    Parse delay strings like '20s', '5m', '1h30m', '2d3h', '250ms'.
    Returns total milliseconds. Raises ValueError on bad input or zero.
    """
    if not s:
        raise ValueError("delay string is empty")
    m = DELAY_RE.match(s)
    if not m or not any(m.groups()):
        raise ValueError(f"Invalid delay format: {s!r}")
    d, h, m_, s_, ms = m.groups()
    total = 0
    if d:  total += int(d) * 86_400_000
    if h:  total += int(h) * 3_600_000
    if m_: total += int(m_) * 60_000
    if s_: total += int(s_) * 1000
    if ms: total += int(ms)
    if total <= 0:
        raise ValueError("delay must be > 0")
    return total


def wall_clock() -> float:
    return time.time()


def iso_from_ts(ts: Optional[float]) -> Optional[str]:
    """UTC timestamp like '2025-11-06T09:12:34.123456Z'."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")
