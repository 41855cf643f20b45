from __future__ import annotations

import argparse
import asyncio
import logging
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

import httpx
import yaml

from uptime_ledger.history import DEFAULT_RETENTION_DAYS, format_ts, parse_ts
from uptime_ledger.ledger import Ledger, ledger_from_dict, merge_ledger
from uptime_ledger.probe import (
    ALLOWED_METHODS,
    DEFAULT_TIMEOUT_SECONDS,
    ServiceSpec,
    probe_all,
)
from uptime_ledger.store import (
    DEFAULT_GIST_FILENAME,
    FileStore,
    GistConfig,
    GistStore,
    LedgerStore,
    StoreConflictError,
    StoreError,
)


LOGGER = logging.getLogger("uptime-ledger")


def load_config(path: Path) -> dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError("Config YAML must be a mapping")
    return data


def _get_section(config: dict[str, Any], name: str) -> dict[str, Any]:
    cfg = config.get(name) or {}
    return cfg if isinstance(cfg, dict) else {}


def _normalize_service_entries(services_cfg: Any) -> list[ServiceSpec]:
    if not isinstance(services_cfg, list) or not services_cfg:
        raise ValueError("Config must contain a non-empty 'services' list")

    specs: list[ServiceSpec] = []
    seen: set[str] = set()
    for idx, entry in enumerate(services_cfg):
        if not isinstance(entry, dict):
            raise ValueError(f"services[{idx}] must be a mapping, got {type(entry).__name__}")

        name = str(entry.get("name") or "").strip()
        if not name:
            raise ValueError(f"services[{idx}].name is required")
        if name in seen:
            raise ValueError(f"services[{idx}].name is duplicated: {name}")
        seen.add(name)

        url = str(entry.get("url") or "").strip()
        try:
            scheme = urlsplit(url).scheme
        except ValueError as exc:
            raise ValueError(f"services[{idx}].url is not a valid URL: {url!r} ({exc})") from exc
        if scheme not in ("http", "https"):
            raise ValueError(f"services[{idx}].url must be an http(s) URL, got {url!r}")

        method = str(entry.get("method") or "HEAD").strip().upper()
        if method not in ALLOWED_METHODS:
            raise ValueError(f"services[{idx}].method must be one of {ALLOWED_METHODS}, got {method!r}")

        disabled = bool(entry.get("disabled")) or (entry.get("enabled") is False)
        specs.append(ServiceSpec(name=name, url=url, method=method, disabled=disabled))
    return specs


def build_store(config: dict[str, Any], client: httpx.AsyncClient) -> LedgerStore:
    store_cfg = _get_section(config, "store")
    kind = str(store_cfg.get("kind") or "gist").strip().lower()

    if kind == "file":
        path = os.getenv("UPTIME_STATE_PATH") or store_cfg.get("path")
        if not path:
            raise ValueError("store.path (or UPTIME_STATE_PATH) is required for the file store")
        return FileStore(Path(str(path)))

    if kind == "gist":
        gist_id = os.getenv("GIST_ID")
        token = os.getenv("GH_PAT")
        if not gist_id or not token:
            raise RuntimeError("Missing GIST_ID and/or GH_PAT env vars")
        return GistStore(
            client,
            GistConfig(
                gist_id=gist_id.strip(),
                token=token.strip(),
                filename=str(store_cfg.get("filename") or DEFAULT_GIST_FILENAME),
            ),
        )

    raise ValueError(f"Unknown store.kind {kind!r}; expected 'gist' or 'file'")


async def run_once(
    services: list[ServiceSpec],
    now: datetime,
    *,
    client: httpx.AsyncClient,
    store: LedgerStore,
    retention_days: int = DEFAULT_RETENTION_DAYS,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    concurrency: int = 10,
    detect_conflicts: bool = False,
) -> Ledger:
    """
    Probe every service, merge into the stored ledger, write it back.

    Read-modify-write with no lock: two overlapping runs both read the same
    document and the later write wins. With ``detect_conflicts`` the store
    raises StoreConflictError instead of overwriting a newer revision.
    """
    now = parse_ts(now)
    LOGGER.info("Uptime check at %s services=%s", format_ts(now), len(services))
    results = await probe_all(services, client, timeout_seconds=timeout_seconds, concurrency=concurrency)

    stored = await store.read()
    previous = ledger_from_dict(stored.document, now=now) if stored is not None else None
    if stored is not None and previous is None:
        LOGGER.warning("Stored ledger has no checks; reinitializing")

    ledger = merge_ledger(previous, results, now, services=services, retention_days=retention_days)

    expected_version = stored.version if (detect_conflicts and stored is not None) else None
    await store.write(ledger.to_dict(), expected_version=expected_version)
    return ledger


def _format_run_summary(ledger: Ledger) -> str:
    down = sorted(name for name, stat in ledger.services.items() if stat.status != "up")
    open_incidents = sum(1 for i in ledger.incidents if not i.resolved)
    return (
        f"services={len(ledger.services)} down={','.join(down) or '-'} "
        f"open_incidents={open_incidents} checks={len(ledger.checks)}"
    )


async def run_loop(config_path: Path, once: bool) -> int:
    config = load_config(config_path)
    interval_seconds = max(1, int(config.get("interval_seconds", 300)))
    retention_days = int(config.get("retention_days", DEFAULT_RETENTION_DAYS))
    if retention_days < 1:
        raise ValueError("retention_days must be >= 1")
    probe_cfg = _get_section(config, "probe")
    timeout_seconds = float(probe_cfg.get("timeout_seconds", DEFAULT_TIMEOUT_SECONDS))
    concurrency = max(1, int(probe_cfg.get("concurrency", 10)))
    detect_conflicts = bool(_get_section(config, "store").get("detect_conflicts", False))

    services = _normalize_service_entries(config.get("services"))
    disabled = [s.name for s in services if s.disabled]
    if disabled:
        LOGGER.info("Disabled services (skipped): %s", ", ".join(disabled))

    async with httpx.AsyncClient() as client:
        store = build_store(config, client)
        LOGGER.info(
            "Starting uptime ledger services=%s interval_seconds=%s retention_days=%s once=%s",
            len(services),
            interval_seconds,
            retention_days,
            once,
        )

        while True:
            started = time.monotonic()
            try:
                ledger = await run_once(
                    services,
                    datetime.now(timezone.utc),
                    client=client,
                    store=store,
                    retention_days=retention_days,
                    timeout_seconds=timeout_seconds,
                    concurrency=concurrency,
                    detect_conflicts=detect_conflicts,
                )
            except StoreConflictError as err:
                LOGGER.warning("Ledger not written; concurrent update detected error=%s", err)
                if once:
                    return 1
            except StoreError as err:
                if once:
                    LOGGER.error("Monitor failed error=%s", err)
                    return 1
                LOGGER.exception("Run failed error=%s", err)
            else:
                LOGGER.info("Run complete %s", _format_run_summary(ledger))
                if once:
                    return 0

            elapsed = time.monotonic() - started
            sleep_for = max(0.0, interval_seconds - elapsed)
            LOGGER.info(
                "Cycle complete elapsed_seconds=%s sleep_seconds=%s",
                round(elapsed, 3),
                round(sleep_for, 3),
            )
            await asyncio.sleep(sleep_for)


def main() -> int:
    parser = argparse.ArgumentParser(description="Uptime ledger monitor")
    parser.add_argument(
        "--config",
        default=str(Path(__file__).with_name("config.yaml")),
        help="Path to YAML config",
    )
    parser.add_argument("--once", action="store_true", help="Run one check cycle and exit")
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (INFO, WARNING, ...)",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    # The gist token travels in request headers; keep transport logs quiet.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    return asyncio.run(run_loop(Path(args.config), once=bool(args.once)))


if __name__ == "__main__":
    raise SystemExit(main())
