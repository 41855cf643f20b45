from __future__ import annotations

import json
import threading
from datetime import datetime, timedelta, timezone
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from typing import Any

import httpx
import pytest
import yaml

from uptime_ledger.main import (
    _normalize_service_entries,
    build_store,
    load_config,
    run_loop,
    run_once,
)
from uptime_ledger.store import FileStore, GistStore, StoredLedger, StoreConflictError, StoreError


T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class _Handler(BaseHTTPRequestHandler):
    def log_message(self, format: str, *args) -> None:  # noqa: A002
        return

    def _respond(self) -> None:
        status = 200 if self.path == "/up" else 503
        self.send_response(status)
        self.send_header("Content-Length", "0")
        self.end_headers()

    def do_GET(self) -> None:  # noqa: N802
        self._respond()

    def do_HEAD(self) -> None:  # noqa: N802
        self._respond()


@pytest.fixture(scope="module")
def local_server_base_url() -> str:
    httpd = HTTPServer(("127.0.0.1", 0), _Handler)
    host, port = httpd.server_address
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()

    try:
        yield f"http://{host}:{port}"
    finally:
        httpd.shutdown()
        thread.join(timeout=5)
        httpd.server_close()


class _RecordingStore:
    def __init__(self, stored: StoredLedger | None = None, *, fail_read: bool = False) -> None:
        self.stored = stored
        self.fail_read = fail_read
        self.writes: list[dict[str, Any]] = []

    async def read(self) -> StoredLedger | None:
        if self.fail_read:
            raise StoreError("Failed to read gist: 500 boom")
        return self.stored

    async def write(self, document: dict[str, Any], *, expected_version: str | None = None) -> None:
        self.writes.append(document)


def test_shipped_config_services_are_valid() -> None:
    config_path = Path(__file__).resolve().parents[1] / "uptime_ledger" / "config.yaml"
    config = load_config(config_path)
    specs = _normalize_service_entries(config.get("services"))
    assert specs
    assert len({s.name for s in specs}) == len(specs)
    for spec in specs:
        assert spec.url.startswith(("http://", "https://"))
        assert spec.method in ("HEAD", "GET")
    assert int(config.get("retention_days")) == 30


@pytest.mark.parametrize(
    "entries",
    [
        [],
        ["https://a.example"],
        [{"url": "https://a.example"}],
        [{"name": "a", "url": "ftp://a.example"}],
        [{"name": "a", "url": "https://a.example", "method": "POST"}],
        [{"name": "a", "url": "https://a.example"}, {"name": "a", "url": "https://b.example"}],
    ],
)
def test_normalize_service_entries_rejects_bad_config(entries: list[Any]) -> None:
    with pytest.raises(ValueError):
        _normalize_service_entries(entries)


def test_normalize_service_entries_names_the_entry_with_an_unparseable_url() -> None:
    with pytest.raises(ValueError, match=r"services\[1\]\.url"):
        _normalize_service_entries(
            [
                {"name": "a", "url": "https://a.example"},
                {"name": "b", "url": "http://[::1"},
            ]
        )


def test_normalize_service_entries_defaults_and_disabled_flags() -> None:
    specs = _normalize_service_entries(
        [
            {"name": "a", "url": "https://a.example"},
            {"name": "b", "url": "https://b.example", "method": "get", "disabled": True},
            {"name": "c", "url": "https://c.example", "enabled": False},
        ]
    )
    assert specs[0].method == "HEAD"
    assert specs[0].disabled is False
    assert specs[1].method == "GET"
    assert specs[1].disabled is True
    assert specs[2].disabled is True


@pytest.mark.asyncio
async def test_build_store_requires_gist_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("GIST_ID", raising=False)
    monkeypatch.delenv("GH_PAT", raising=False)
    async with httpx.AsyncClient() as client:
        with pytest.raises(RuntimeError):
            build_store({"store": {"kind": "gist"}}, client)

        monkeypatch.setenv("GIST_ID", "abc")
        monkeypatch.setenv("GH_PAT", "tok")
        store = build_store({}, client)
        assert isinstance(store, GistStore)
        assert store.cfg.filename == "uptime.json"

        with pytest.raises(ValueError):
            build_store({"store": {"kind": "s3"}}, client)


@pytest.mark.asyncio
async def test_build_store_file_path_env_override(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("UPTIME_STATE_PATH", str(tmp_path / "override.json"))
    async with httpx.AsyncClient() as client:
        store = build_store({"store": {"kind": "file", "path": "ignored.json"}}, client)
    assert isinstance(store, FileStore)
    assert store.path == tmp_path / "override.json"


@pytest.mark.asyncio
async def test_run_once_opens_then_resolves_incident(local_server_base_url: str, tmp_path: Path) -> None:
    store = FileStore(tmp_path / "uptime.json")
    down_services = _normalize_service_entries(
        [
            {"name": "serviceA", "url": f"{local_server_base_url}/down"},
            {"name": "serviceB", "url": f"{local_server_base_url}/up", "method": "GET"},
        ]
    )
    async with httpx.AsyncClient() as client:
        first = await run_once(down_services, T0, client=client, store=store, timeout_seconds=5.0)
        assert [i.service for i in first.incidents if not i.resolved] == ["serviceA"]

        up_services = _normalize_service_entries(
            [
                {"name": "serviceA", "url": f"{local_server_base_url}/up"},
                {"name": "serviceB", "url": f"{local_server_base_url}/up", "method": "GET"},
            ]
        )
        t1 = T0 + timedelta(minutes=5)
        second = await run_once(up_services, t1, client=client, store=store, timeout_seconds=5.0)

    assert second.incidents[0].resolved is True
    assert second.incidents[0].duration_ms == 5 * 60 * 1000

    doc = json.loads((tmp_path / "uptime.json").read_text(encoding="utf-8"))
    assert doc["monitoringSince"] == "2026-03-01T12:00:00.000Z"
    assert doc["lastCheck"] == "2026-03-01T12:05:00.000Z"
    assert len(doc["checks"]) == 2
    assert doc["services"]["serviceA"]["uptimePercent"] == 50.0
    assert doc["incidents"][0]["resolved"] is True


@pytest.mark.asyncio
async def test_run_once_store_read_failure_aborts_without_write(local_server_base_url: str) -> None:
    store = _RecordingStore(fail_read=True)
    services = _normalize_service_entries([{"name": "a", "url": f"{local_server_base_url}/up"}])
    async with httpx.AsyncClient() as client:
        with pytest.raises(StoreError):
            await run_once(services, T0, client=client, store=store, timeout_seconds=5.0)
    assert store.writes == []


@pytest.mark.asyncio
async def test_run_once_reinitializes_document_without_checks(local_server_base_url: str) -> None:
    store = _RecordingStore(StoredLedger(document={"monitoringSince": "2020-01-01T00:00:00.000Z"}, version="v1"))
    services = _normalize_service_entries([{"name": "a", "url": f"{local_server_base_url}/up"}])
    async with httpx.AsyncClient() as client:
        ledger = await run_once(services, T0, client=client, store=store, timeout_seconds=5.0)
    assert ledger.monitoring_since == T0
    assert len(store.writes) == 1
    assert store.writes[0]["monitoringSince"] == "2026-03-01T12:00:00.000Z"


@pytest.mark.asyncio
async def test_run_once_detects_overlapping_run(local_server_base_url: str, tmp_path: Path) -> None:
    store = FileStore(tmp_path / "uptime.json")
    services = _normalize_service_entries([{"name": "a", "url": f"{local_server_base_url}/up"}])

    class _SlowReader(FileStore):
        # Another run commits between this run's read and its write.
        async def read(self) -> StoredLedger | None:
            stored = await super().read()
            await FileStore(self.path).write({"checks": [], "intruder": True})
            return stored

    async with httpx.AsyncClient() as client:
        await run_once(services, T0, client=client, store=store, timeout_seconds=5.0)
        racing = _SlowReader(store.path)
        with pytest.raises(StoreConflictError):
            await run_once(
                services,
                T0 + timedelta(minutes=1),
                client=client,
                store=racing,
                timeout_seconds=5.0,
                detect_conflicts=True,
            )

    doc = json.loads(store.path.read_text(encoding="utf-8"))
    assert doc.get("intruder") is True


@pytest.mark.asyncio
async def test_run_loop_once_with_file_store(
    local_server_base_url: str, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.delenv("UPTIME_STATE_PATH", raising=False)
    state_path = tmp_path / "state" / "uptime.json"
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        yaml.safe_dump(
            {
                "retention_days": 30,
                "probe": {"timeout_seconds": 5, "concurrency": 2},
                "store": {"kind": "file", "path": str(state_path)},
                "services": [
                    {"name": "up", "url": f"{local_server_base_url}/up"},
                    {"name": "down", "url": f"{local_server_base_url}/down", "method": "GET"},
                ],
            }
        ),
        encoding="utf-8",
    )

    assert await run_loop(config_path, once=True) == 0

    doc = json.loads(state_path.read_text(encoding="utf-8"))
    assert doc["services"]["up"]["status"] == "up"
    assert doc["services"]["down"]["status"] == "down"
    assert [i["service"] for i in doc["incidents"]] == ["down"]


@pytest.mark.asyncio
async def test_run_loop_once_returns_1_on_store_failure(
    local_server_base_url: str, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.delenv("UPTIME_STATE_PATH", raising=False)
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        yaml.safe_dump(
            {
                "store": {"kind": "file", "path": str(blocker / "uptime.json")},
                "services": [{"name": "up", "url": f"{local_server_base_url}/up"}],
            }
        ),
        encoding="utf-8",
    )
    assert await run_loop(config_path, once=True) == 1
