from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from uptime_ledger.history import DEFAULT_RETENTION_DAYS, format_ts, parse_ts, prune_checks
from uptime_ledger.incidents import Incident, coerce_incident, update_incidents
from uptime_ledger.probe import ProbeOutcome, ServiceSpec
from uptime_ledger.stats import ServiceStat, compute_service_stats


LOGGER = logging.getLogger("uptime-ledger")


@dataclass(frozen=True)
class CheckRecord:
    time: datetime
    results: dict[str, ProbeOutcome]

    def to_dict(self) -> dict[str, Any]:
        return {
            "time": format_ts(self.time),
            "results": {
                name: {"up": outcome.up, "ms": outcome.latency_ms}
                for name, outcome in self.results.items()
            },
        }


@dataclass
class Ledger:
    monitoring_since: datetime
    last_check: datetime
    services: dict[str, ServiceStat] = field(default_factory=dict)
    incidents: list[Incident] = field(default_factory=list)
    checks: list[CheckRecord] = field(default_factory=list)

    @classmethod
    def fresh(cls, now: datetime) -> "Ledger":
        return cls(monitoring_since=now, last_check=now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "monitoringSince": format_ts(self.monitoring_since),
            "lastCheck": format_ts(self.last_check),
            "services": {name: stat.to_dict() for name, stat in self.services.items()},
            "incidents": [i.to_dict() for i in self.incidents],
            "checks": [c.to_dict() for c in self.checks],
        }


def _coerce_optional_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(round(float(value)))
    except (TypeError, ValueError):
        return None


def _coerce_results(raw: Any) -> dict[str, ProbeOutcome]:
    if not isinstance(raw, dict):
        return {}
    out: dict[str, ProbeOutcome] = {}
    for name, item in raw.items():
        if not isinstance(name, str) or not isinstance(item, dict):
            continue
        out[name] = ProbeOutcome(up=bool(item.get("up")), latency_ms=_coerce_optional_int(item.get("ms")))
    return out


def coerce_checks(raw: Any) -> list[CheckRecord]:
    if not isinstance(raw, list):
        return []
    checks: list[CheckRecord] = []
    skipped = 0
    for item in raw:
        ts = parse_ts(item.get("time")) if isinstance(item, dict) else None
        if ts is None:
            skipped += 1
            continue
        checks.append(CheckRecord(time=ts, results=_coerce_results(item.get("results"))))
    if skipped:
        LOGGER.warning("Skipped malformed check records count=%s", skipped)
    # Records are append-only; a stable sort only matters for hand-edited documents.
    checks.sort(key=lambda c: c.time)
    return checks


def coerce_incidents(raw: Any) -> list[Incident]:
    if not isinstance(raw, list):
        return []
    incidents: list[Incident] = []
    for item in raw:
        incident = coerce_incident(item)
        if incident is None:
            LOGGER.warning("Skipped malformed incident entry=%r", item)
            continue
        incidents.append(incident)
    return incidents


def coerce_services(raw: Any) -> dict[str, ServiceStat]:
    """
    Decodes the stored stats so a loaded ledger re-encodes unchanged for
    readers of the document. merge_ledger never consults them: stats are
    recomputed from the retained checks every run.
    """
    if not isinstance(raw, dict):
        return {}
    out: dict[str, ServiceStat] = {}
    for name, item in raw.items():
        if not isinstance(name, str) or not isinstance(item, dict):
            continue
        last_checked = parse_ts(item.get("lastChecked"))
        if last_checked is None:
            continue
        try:
            out[name] = ServiceStat(
                url=str(item.get("url") or ""),
                status="up" if item.get("status") == "up" else "down",
                uptime_percent=float(item.get("uptimePercent", 100.0)),
                avg_response_ms=int(item.get("avgResponseMs") or 0),
                total_checks=int(item.get("totalChecks") or 0),
                healthy_checks=int(item.get("healthyChecks") or 0),
                last_response_ms=int(item.get("lastResponseMs") or 0),
                last_checked=last_checked,
            )
        except (TypeError, ValueError):
            continue
    return out


def ledger_from_dict(raw: Any, *, now: datetime | None = None) -> Ledger | None:
    """
    Best-effort decode of a persisted ledger document.

    Returns None when the document is not a mapping or has no ``checks`` list;
    callers treat that exactly like a first run.
    """
    if not isinstance(raw, dict) or not isinstance(raw.get("checks"), list):
        return None

    checks = coerce_checks(raw.get("checks"))
    monitoring_since = parse_ts(raw.get("monitoringSince"))
    if monitoring_since is None:
        monitoring_since = checks[0].time if checks else now
    last_check = parse_ts(raw.get("lastCheck"))
    if last_check is None:
        last_check = checks[-1].time if checks else monitoring_since
    if monitoring_since is None or last_check is None:
        return None

    return Ledger(
        monitoring_since=monitoring_since,
        last_check=last_check,
        services=coerce_services(raw.get("services")),
        incidents=coerce_incidents(raw.get("incidents")),
        checks=checks,
    )


def merge_ledger(
    previous: Ledger | None,
    current_results: dict[str, ProbeOutcome],
    now: datetime,
    *,
    services: list[ServiceSpec],
    retention_days: int = DEFAULT_RETENTION_DAYS,
) -> Ledger:
    """
    Previous ledger + one run's probe outcomes -> next ledger.

    Pure: ``previous`` is left untouched and nothing is persisted here.
    A naive ``now`` is taken as UTC, matching how stored times are decoded.
    """
    now = parse_ts(now)
    if previous is None:
        LOGGER.info("No existing ledger; initializing monitoring_since=%s", format_ts(now))
        previous = Ledger.fresh(now)

    checks = list(previous.checks)
    checks.append(CheckRecord(time=now, results=dict(current_results)))
    checks = prune_checks(checks, now=now, retention_days=retention_days)

    return Ledger(
        monitoring_since=previous.monitoring_since,
        last_check=now,
        services=compute_service_stats(services, checks, current_results, now),
        incidents=update_incidents(previous.incidents, current_results, now, retention_days=retention_days),
        checks=checks,
    )
