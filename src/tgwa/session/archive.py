"""Zip a session directory into a blob and back."""

from __future__ import annotations

import io
import shutil
import zipfile
from dataclasses import dataclass
from pathlib import Path


class SessionArchiveError(RuntimeError):
    """Raised when a session blob cannot be unpacked safely."""


@dataclass(frozen=True, slots=True)
class SessionArchive:
    """Pack/unpack the outbound transport's session directory.

    Invariant: `unpack()` replaces the directory contents entirely and refuses
    archive members that would land outside it.
    """

    directory: Path

    def pack(self) -> bytes | None:
        """Return a zip of the directory, or `None` if it is missing or empty."""

        if not self.directory.is_dir():
            return None
        files = sorted(p for p in self.directory.rglob("*") if p.is_file())
        if not files:
            return None

        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for path in files:
                zf.write(path, arcname=path.relative_to(self.directory).as_posix())
        return buf.getvalue()

    def unpack(self, blob: bytes) -> None:
        try:
            zf = zipfile.ZipFile(io.BytesIO(blob))
        except zipfile.BadZipFile as e:
            raise SessionArchiveError("session blob is not a zip archive") from e

        root = self.directory.resolve()
        with zf:
            for name in zf.namelist():
                target = (root / name).resolve()
                if not target.is_relative_to(root):
                    raise SessionArchiveError(f"unsafe path in session archive: {name!r}")

            if root.exists():
                shutil.rmtree(root)
            root.mkdir(parents=True, exist_ok=True)
            zf.extractall(root)
