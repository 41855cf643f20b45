from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:
    from uptime_ledger.incidents import Incident
    from uptime_ledger.ledger import CheckRecord


DEFAULT_RETENTION_DAYS = 30


def parse_ts(value: Any) -> datetime | None:
    """
    ISO-8601 string -> aware UTC datetime. Returns None for anything unparseable
    so callers can skip the entry, like the rest of the best-effort decoding.
    """
    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value or "").strip()
        if not s:
            return None
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_ts(dt: datetime) -> str:
    # 2026-01-01T00:00:00.000Z, the shape existing ledgers already use.
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def elapsed_ms(start: datetime, end: datetime) -> int:
    return int((end - start) // timedelta(milliseconds=1))


def retention_cutoff(now: datetime, *, retention_days: int = DEFAULT_RETENTION_DAYS) -> datetime:
    return now - timedelta(days=int(retention_days))


def prune_checks(
    checks: list[CheckRecord],
    *,
    now: datetime,
    retention_days: int = DEFAULT_RETENTION_DAYS,
) -> list[CheckRecord]:
    cutoff = retention_cutoff(now, retention_days=retention_days)
    return [c for c in checks if c.time > cutoff]


def prune_incidents(
    incidents: list[Incident],
    *,
    now: datetime,
    retention_days: int = DEFAULT_RETENTION_DAYS,
) -> list[Incident]:
    """
    Open incidents are always kept. Resolved ones are aged by start time, not
    end time, so a long outage that started before the cutoff is dropped once
    it resolves.
    """
    cutoff = retention_cutoff(now, retention_days=retention_days)
    return [i for i in incidents if not i.resolved or i.start_time > cutoff]
