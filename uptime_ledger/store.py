from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import httpx


LOGGER = logging.getLogger("uptime-ledger")

DEFAULT_GIST_FILENAME = "uptime.json"
GITHUB_API_BASE_URL = "https://api.github.com"


class StoreError(RuntimeError):
    pass


class StoreConflictError(StoreError):
    """The stored document changed between our read and our write."""


@dataclass(frozen=True)
class StoredLedger:
    document: dict[str, Any]
    # Opaque token identifying the stored revision; None when the store has no notion of one.
    version: str | None = None


class LedgerStore(Protocol):
    async def read(self) -> StoredLedger | None: ...

    async def write(self, document: dict[str, Any], *, expected_version: str | None = None) -> None: ...


def _decode_document(text: str, *, source: str) -> dict[str, Any] | None:
    if not (text or "").strip():
        return None
    try:
        data = json.loads(text)
    except ValueError as exc:
        LOGGER.warning("Stored ledger is not valid JSON source=%s error=%s", source, exc)
        return None
    if not isinstance(data, dict):
        LOGGER.warning("Stored ledger is not a JSON object source=%s", source)
        return None
    return data


def _encode_document(document: dict[str, Any]) -> str:
    return json.dumps(document, ensure_ascii=False, indent=2)


@dataclass(frozen=True)
class GistConfig:
    gist_id: str
    token: str
    filename: str = DEFAULT_GIST_FILENAME
    api_base_url: str = GITHUB_API_BASE_URL


class GistStore:
    """Ledger kept as one JSON file inside a GitHub gist."""

    def __init__(self, client: httpx.AsyncClient, cfg: GistConfig) -> None:
        self.client = client
        self.cfg = cfg

    @property
    def url(self) -> str:
        return f"{self.cfg.api_base_url.rstrip('/')}/gists/{self.cfg.gist_id}"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"token {self.cfg.token}",
            "Accept": "application/vnd.github+json",
        }

    async def _get_gist(self) -> dict[str, Any]:
        try:
            resp = await self.client.get(self.url, headers=self._headers(), timeout=30.0)
        except httpx.HTTPError as exc:
            raise StoreError(f"Failed to read gist: {type(exc).__name__}: {exc}") from exc
        if not resp.is_success:
            raise StoreError(f"Failed to read gist: {resp.status_code} {resp.text}")
        try:
            data = resp.json()
        except ValueError as exc:
            raise StoreError(f"Unexpected gist response (invalid JSON): {exc}") from exc
        if not isinstance(data, dict):
            raise StoreError("Unexpected gist response (not a JSON object)")
        return data

    @staticmethod
    def _latest_version(gist: dict[str, Any]) -> str | None:
        history = gist.get("history")
        if isinstance(history, list) and history and isinstance(history[0], dict):
            version = history[0].get("version")
            return str(version) if version else None
        return None

    async def _file_content(self, file: dict[str, Any]) -> str:
        # The API truncates large files inline; the full text lives at raw_url.
        if not file.get("truncated"):
            return str(file.get("content") or "")
        raw_url = str(file.get("raw_url") or "")
        if not raw_url:
            raise StoreError("Gist file is truncated and has no raw_url")
        try:
            resp = await self.client.get(raw_url, headers=self._headers(), timeout=30.0)
        except httpx.HTTPError as exc:
            raise StoreError(f"Failed to read gist raw content: {type(exc).__name__}: {exc}") from exc
        if not resp.is_success:
            raise StoreError(f"Failed to read gist raw content: {resp.status_code} {resp.text}")
        return resp.text

    async def read(self) -> StoredLedger | None:
        gist = await self._get_gist()
        files = gist.get("files")
        file = files.get(self.cfg.filename) if isinstance(files, dict) else None
        if not isinstance(file, dict):
            return None
        document = _decode_document(await self._file_content(file), source=f"gist:{self.cfg.filename}")
        if document is None:
            return None
        return StoredLedger(document=document, version=self._latest_version(gist))

    async def write(self, document: dict[str, Any], *, expected_version: str | None = None) -> None:
        if expected_version is not None:
            # Best effort only: the gist API has no conditional PATCH, so a
            # writer can still slip in between this check and our write.
            current = self._latest_version(await self._get_gist())
            if current != expected_version:
                raise StoreConflictError(
                    f"Gist changed since read (expected_version={expected_version} current_version={current})"
                )

        payload = {"files": {self.cfg.filename: {"content": _encode_document(document)}}}
        try:
            resp = await self.client.patch(
                self.url,
                headers={**self._headers(), "Content-Type": "application/json"},
                json=payload,
                timeout=30.0,
            )
        except httpx.HTTPError as exc:
            raise StoreError(f"Failed to write gist: {type(exc).__name__}: {exc}") from exc
        if not resp.is_success:
            raise StoreError(f"Failed to write gist: {resp.status_code} {resp.text}")


class FileStore:
    """Ledger kept in a local JSON file, replaced atomically on write."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def _read_bytes(self) -> bytes | None:
        try:
            return self.path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StoreError(f"Failed to read ledger file path={self.path} error={exc}") from exc

    @staticmethod
    def _version(raw: bytes | None) -> str | None:
        return hashlib.sha256(raw).hexdigest() if raw is not None else None

    async def read(self) -> StoredLedger | None:
        raw = self._read_bytes()
        if raw is None:
            return None
        document = _decode_document(raw.decode("utf-8", errors="replace"), source=str(self.path))
        if document is None:
            return None
        return StoredLedger(document=document, version=self._version(raw))

    async def write(self, document: dict[str, Any], *, expected_version: str | None = None) -> None:
        if expected_version is not None:
            current = self._version(self._read_bytes())
            if current != expected_version:
                raise StoreConflictError(
                    f"Ledger file changed since read path={self.path} "
                    f"expected_version={expected_version} current_version={current}"
                )
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_name(f"{self.path.name}.tmp")
            tmp.write_text(_encode_document(document), encoding="utf-8")
            tmp.replace(self.path)
        except OSError as exc:
            raise StoreError(f"Failed to write ledger file path={self.path} error={exc}") from exc
