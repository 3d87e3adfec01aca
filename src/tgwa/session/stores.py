"""Session blob stores.

Every store implements `tgwa.relay.protocols.SessionStore`. Stores are only
touched around the `authenticated`/`ready` transitions and by operator
commands, never on the dispatch path.
"""

from __future__ import annotations

import base64
import binascii
import os
from dataclasses import dataclass, field
from logging import getLogger
from pathlib import Path

import anyio.to_thread as to_thread
import httpx

logger = getLogger(__name__)


class SessionStoreError(RuntimeError):
    """Raised when a session store cannot read or write its blob."""


@dataclass(frozen=True, slots=True)
class NullSessionStore:
    """Stores nothing; every start needs a fresh QR login."""

    async def save(self, blob: bytes) -> None:
        logger.debug("session store disabled; dropping %d byte blob", len(blob))

    async def load(self) -> bytes | None:
        return None


def _write_atomic(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_bytes(data)
    os.replace(tmp, path)


def _read_optional(path: Path) -> bytes | None:
    try:
        return path.read_bytes()
    except FileNotFoundError:
        return None


@dataclass(frozen=True, slots=True)
class FileSessionStore:
    """Keeps the blob in a single file (e.g. on a persistent volume)."""

    path: Path

    async def save(self, blob: bytes) -> None:
        try:
            await to_thread.run_sync(_write_atomic, self.path, blob)
        except OSError as e:
            raise SessionStoreError(f"cannot write session file {self.path}: {e}") from e

    async def load(self) -> bytes | None:
        try:
            return await to_thread.run_sync(_read_optional, self.path)
        except OSError as e:
            raise SessionStoreError(f"cannot read session file {self.path}: {e}") from e


@dataclass(frozen=True, slots=True)
class EnvSessionStore:
    """Reads a base64 blob from an environment variable.

    A process cannot persist its own environment, so `save()` writes the
    base64 text to `export_path` for the operator to copy into the deployment
    settings. When the variable is already set, `save()` does nothing.
    """

    var_name: str = "WHATSAPP_SESSION"
    export_path: Path = Path("session_base64.txt")

    async def save(self, blob: bytes) -> None:
        if os.environ.get(self.var_name):
            logger.info("%s already set; skipping session export", self.var_name)
            return
        encoded = base64.b64encode(blob)
        try:
            await to_thread.run_sync(_write_atomic, self.export_path, encoded)
        except OSError as e:
            raise SessionStoreError(
                f"cannot write session export {self.export_path}: {e}"
            ) from e
        logger.warning(
            "session exported to %s (%d base64 chars); copy it into %s",
            self.export_path,
            len(encoded),
            self.var_name,
        )

    async def load(self) -> bytes | None:
        raw = os.environ.get(self.var_name, "").strip()
        if not raw:
            return None
        try:
            return base64.b64decode(raw, validate=True)
        except (binascii.Error, ValueError) as e:
            raise SessionStoreError(f"{self.var_name} is not valid base64") from e


@dataclass(slots=True)
class HttpSessionStore:
    """Stores the blob at a URL (`PUT` to save, `GET` to load, 404 = none).

    Works with presigned object-storage URLs, WebDAV, or any blob endpoint
    accepting bearer-token auth.
    """

    url: str
    token: str | None = None
    timeout_seconds: float = 30.0
    transport: httpx.AsyncBaseTransport | None = field(default=None, repr=False)

    def _client(self) -> httpx.AsyncClient:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        return httpx.AsyncClient(
            headers=headers,
            timeout=httpx.Timeout(self.timeout_seconds),
            follow_redirects=True,
            transport=self.transport,
        )

    async def save(self, blob: bytes) -> None:
        async with self._client() as client:
            try:
                resp = await client.put(
                    self.url,
                    content=blob,
                    headers={"Content-Type": "application/zip"},
                )
            except httpx.HTTPError as e:
                raise SessionStoreError(f"session upload failed: {e}") from e
        if resp.is_error:
            raise SessionStoreError(f"session upload failed: HTTP {resp.status_code}")

    async def load(self) -> bytes | None:
        async with self._client() as client:
            try:
                resp = await client.get(self.url)
            except httpx.HTTPError as e:
                raise SessionStoreError(f"session download failed: {e}") from e
        if resp.status_code == 404:
            return None
        if resp.is_error:
            raise SessionStoreError(f"session download failed: HTTP {resp.status_code}")
        return resp.content or None
