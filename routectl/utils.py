from datetime import datetime, timezone, timedelta
import re

# e.g., "20s", "5m", "1h30m", "2d3h", "90m", "  2h  "
DELAY_RE = re.compile(r"(?i)^\s*(?:(\d+)\s*d)?\s*(?:(\d+)\s*h)?\s*(?:(\d+)\s*m)?\s*(?:(\d+)\s*s)?\s*$")

def parse_delay_to_seconds(s: str) -> int:
    """
    Parse delay strings like '20s', '5m', '1h30m', '2d3h', '90m'.
    Returns total seconds (int). Raises ValueError on bad input or zero.
    """
    if not s:
        raise ValueError("delay string is empty")
    m = DELAY_RE.match(s)
    if not m:
        raise ValueError(f"Invalid delay format: {s!r}")
    d, h, m_, s_ = m.groups()
    total = 0
    if d:  total += int(d) * 86400
    if h:  total += int(h) * 3600
    if m_: total += int(m_) * 60
    if s_: total += int(s_)
    if total <= 0:
        raise ValueError("delay must be > 0 seconds")
    return total

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def to_iso(dt: datetime) -> str:
    """Fixed-width UTC timestamp like '2025-11-06T09:12:34.123456Z'.

    Naive datetimes are taken to be UTC. Always carries microseconds so
    stored values sort lexically in time order.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")

def parse_iso(s: str) -> datetime:
    """Inverse of to_iso; also accepts offsets and naive strings (UTC)."""
    dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt

def now_iso() -> str:
    return to_iso(utcnow())

def iso_from_ms_from_now(ms: int) -> str:
    """Return UTC ISO time `ms` milliseconds from now."""
    return to_iso(utcnow() + timedelta(milliseconds=ms))
