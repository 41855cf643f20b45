from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

import httpx


LOGGER = logging.getLogger("uptime-ledger")

DEFAULT_TIMEOUT_SECONDS = 10.0
ALLOWED_METHODS = ("HEAD", "GET")


@dataclass(frozen=True)
class ServiceSpec:
    name: str
    url: str
    method: str = "HEAD"
    disabled: bool = False


@dataclass(frozen=True)
class ProbeOutcome:
    up: bool
    latency_ms: int | None = None


def _is_up_status(status_code: int) -> bool:
    # Redirects are followed, so a 3xx here means the chain ended on one.
    return 200 <= status_code < 400


async def probe_service(
    spec: ServiceSpec,
    client: httpx.AsyncClient,
    *,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
) -> ProbeOutcome:
    """
    One request against the service. Never raises: transport errors and
    timeouts come back as a DOWN outcome with the elapsed time as latency.
    """
    started = time.perf_counter()
    try:
        # httpx timeouts apply per phase; wait_for bounds the whole exchange.
        resp = await asyncio.wait_for(
            client.request(
                spec.method,
                spec.url,
                follow_redirects=True,
                timeout=timeout_seconds,
            ),
            timeout=timeout_seconds,
        )
    except asyncio.TimeoutError:
        elapsed_ms = int(round((time.perf_counter() - started) * 1000.0))
        LOGGER.warning(
            "Probe timed out service=%s timeout_seconds=%s elapsed_ms=%s",
            spec.name,
            timeout_seconds,
            elapsed_ms,
        )
        return ProbeOutcome(up=False, latency_ms=elapsed_ms)
    except httpx.HTTPError as e:
        elapsed_ms = int(round((time.perf_counter() - started) * 1000.0))
        LOGGER.warning(
            "Probe failed service=%s error=%s elapsed_ms=%s",
            spec.name,
            f"{type(e).__name__}: {e}",
            elapsed_ms,
        )
        return ProbeOutcome(up=False, latency_ms=elapsed_ms)

    elapsed_ms = int(round((time.perf_counter() - started) * 1000.0))
    up = _is_up_status(resp.status_code)
    level = logging.INFO if up else logging.WARNING
    LOGGER.log(
        level,
        "Probe service=%s status=%s http_status=%s elapsed_ms=%s",
        spec.name,
        "UP" if up else "DOWN",
        resp.status_code,
        elapsed_ms,
    )
    return ProbeOutcome(up=up, latency_ms=elapsed_ms)


async def probe_all(
    services: list[ServiceSpec],
    client: httpx.AsyncClient,
    *,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    concurrency: int = 10,
) -> dict[str, ProbeOutcome]:
    active = [s for s in services if not s.disabled]
    semaphore = asyncio.Semaphore(max(1, int(concurrency)))

    async def _one(spec: ServiceSpec) -> ProbeOutcome:
        async with semaphore:
            return await probe_service(spec, client, timeout_seconds=timeout_seconds)

    outcomes = await asyncio.gather(*(_one(s) for s in active))
    # Keep configuration order in the persisted results.
    return {spec.name: outcome for spec, outcome in zip(active, outcomes)}
