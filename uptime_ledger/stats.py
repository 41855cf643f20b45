from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, TYPE_CHECKING

from uptime_ledger.history import format_ts
from uptime_ledger.probe import ProbeOutcome, ServiceSpec

if TYPE_CHECKING:
    from uptime_ledger.ledger import CheckRecord


@dataclass(frozen=True)
class ServiceStat:
    url: str
    status: str
    uptime_percent: float
    avg_response_ms: int
    total_checks: int
    healthy_checks: int
    last_response_ms: int
    last_checked: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "status": self.status,
            "uptimePercent": self.uptime_percent,
            "avgResponseMs": self.avg_response_ms,
            "totalChecks": self.total_checks,
            "healthyChecks": self.healthy_checks,
            "lastResponseMs": self.last_response_ms,
            "lastChecked": format_ts(self.last_checked),
        }


def round_half_up(value: float, ndigits: int = 0) -> float:
    # round() is banker's rounding; published percentages round .5 up.
    factor = 10**ndigits
    return math.floor(value * factor + 0.5) / factor


def compute_availability(checks: list[CheckRecord], name: str) -> tuple[int, int, float]:
    """
    Returns (total, healthy, uptime_percent). A service with no retained
    records reads as 100%: an empty history is not evidence of an outage.
    """
    total = 0
    healthy = 0
    for check in checks:
        outcome = check.results.get(name)
        if outcome is None:
            continue
        total += 1
        if outcome.up:
            healthy += 1
    if total <= 0:
        return 0, 0, 100.0
    return total, healthy, round_half_up((healthy / float(total)) * 100.0, 2)


def average_latency_ms(checks: list[CheckRecord], name: str) -> int:
    values = [
        check.results[name].latency_ms
        for check in checks
        if name in check.results and check.results[name].latency_ms is not None
    ]
    if not values:
        return 0
    return int(round_half_up(sum(values) / float(len(values))))


def compute_service_stat(
    spec: ServiceSpec,
    checks: list[CheckRecord],
    current: ProbeOutcome | None,
    now: datetime,
) -> ServiceStat:
    total, healthy, uptime_pct = compute_availability(checks, spec.name)
    return ServiceStat(
        url=spec.url,
        status="up" if current is not None and current.up else "down",
        uptime_percent=uptime_pct,
        avg_response_ms=average_latency_ms(checks, spec.name),
        total_checks=total,
        healthy_checks=healthy,
        last_response_ms=(current.latency_ms or 0) if current is not None else 0,
        last_checked=now,
    )


def compute_service_stats(
    services: list[ServiceSpec],
    checks: list[CheckRecord],
    current_results: dict[str, ProbeOutcome],
    now: datetime,
) -> dict[str, ServiceStat]:
    return {
        spec.name: compute_service_stat(spec, checks, current_results.get(spec.name), now)
        for spec in services
        if not spec.disabled
    }
