from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from uptime_ledger.history import (
    DEFAULT_RETENTION_DAYS,
    elapsed_ms,
    format_ts,
    parse_ts,
    prune_incidents,
)
from uptime_ledger.probe import ProbeOutcome


LOGGER = logging.getLogger("uptime-ledger")


@dataclass
class Incident:
    service: str
    start_time: datetime
    status: str = "down"
    end_time: datetime | None = None
    duration_ms: int | None = None
    resolved: bool = False

    def close(self, now: datetime) -> None:
        self.resolved = True
        self.end_time = now
        self.duration_ms = elapsed_ms(self.start_time, now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "service": self.service,
            "status": self.status,
            "startTime": format_ts(self.start_time),
            "endTime": format_ts(self.end_time) if self.end_time is not None else None,
            "durationMs": self.duration_ms,
            "resolved": self.resolved,
        }


def coerce_incident(raw: Any) -> Incident | None:
    if not isinstance(raw, dict):
        return None
    service = raw.get("service")
    if not isinstance(service, str) or not service:
        return None
    start_time = parse_ts(raw.get("startTime"))
    if start_time is None:
        return None

    resolved = bool(raw.get("resolved"))
    end_time = parse_ts(raw.get("endTime")) if resolved else None
    duration_ms = None
    if resolved and raw.get("durationMs") is not None:
        try:
            duration_ms = int(raw["durationMs"])
        except (TypeError, ValueError):
            duration_ms = None

    return Incident(
        service=service,
        start_time=start_time,
        status=str(raw.get("status") or "down"),
        end_time=end_time,
        duration_ms=duration_ms,
        resolved=resolved,
    )


class IncidentBook:
    """
    Incident list plus an index of the single open incident per service.

    The list keeps insertion order (that is what gets persisted); the index is
    what the state machine consults, so two open incidents for one service can
    only come from a tampered document, never from a transition.
    """

    def __init__(self) -> None:
        self.incidents: list[Incident] = []
        self.open_by_service: dict[str, Incident] = {}
        self.duplicates: list[Incident] = []

    @classmethod
    def from_incidents(cls, incidents: list[Incident]) -> "IncidentBook":
        book = cls()
        for incident in incidents:
            book.incidents.append(incident)
            if incident.resolved:
                continue
            if incident.service in book.open_by_service:
                LOGGER.warning(
                    "Duplicate open incident service=%s start=%s tracked_start=%s",
                    incident.service,
                    format_ts(incident.start_time),
                    format_ts(book.open_by_service[incident.service].start_time),
                )
                book.duplicates.append(incident)
                continue
            book.open_by_service[incident.service] = incident
        return book

    def open_incident(self, service: str) -> Incident | None:
        return self.open_by_service.get(service)

    def open(self, service: str, now: datetime) -> Incident:
        if service in self.open_by_service:
            raise ValueError(f"Service already has an open incident: {service}")
        incident = Incident(service=service, start_time=now)
        self.incidents.append(incident)
        self.open_by_service[service] = incident
        return incident

    def resolve(self, service: str, now: datetime) -> Incident | None:
        incident = self.open_by_service.pop(service, None)
        if incident is None:
            return None
        incident.close(now)
        return incident

    def close_duplicates(self, now: datetime) -> int:
        for incident in self.duplicates:
            incident.close(now)
        closed = len(self.duplicates)
        self.duplicates = []
        return closed


def update_incidents(
    existing: list[Incident],
    current_results: dict[str, ProbeOutcome],
    now: datetime,
    *,
    retention_days: int = DEFAULT_RETENTION_DAYS,
) -> list[Incident]:
    # Work on copies: closing mutates, and the previous ledger must stay intact.
    book = IncidentBook.from_incidents([replace(i) for i in existing])

    closed = book.close_duplicates(now)
    if closed:
        LOGGER.warning("Closed duplicate open incidents count=%s", closed)

    for name, outcome in current_results.items():
        if outcome.up:
            incident = book.resolve(name, now)
            if incident is not None:
                LOGGER.info(
                    "Incident resolved service=%s duration_ms=%s",
                    name,
                    incident.duration_ms,
                )
        elif book.open_incident(name) is None:
            book.open(name, now)
            LOGGER.warning("New incident service=%s start=%s", name, format_ts(now))

    return prune_incidents(book.incidents, now=now, retention_days=retention_days)
