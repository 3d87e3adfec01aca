"""Media resolution: turn inbound media references into byte payloads.

Every failure surfaces as a `MediaResolveError` subclass so the dispatch loop
can treat it exactly like a failed send.
"""

from __future__ import annotations

import mimetypes
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import anyio

from .jobs import MediaRef, ResolvedMedia

_DEFAULT_MAX_BYTES = 100 * 1024 * 1024
_DEFAULT_TIMEOUT_SECONDS = 30.0


class MediaResolveError(Exception):
    """Base class for media resolution failures."""


class MediaNotFound(MediaResolveError):
    pass


class MediaDownloadFailed(MediaResolveError):
    pass


class MediaTooLarge(MediaResolveError):
    pass


@runtime_checkable
class MediaFetcher(Protocol):
    async def fetch(self, file_id: str, *, max_bytes: int) -> bytes:
        """Download `file_id`.

        Implementations raise `MediaNotFound` / `MediaTooLarge` when they can
        tell; any other exception is reported as `MediaDownloadFailed`.
        """


@dataclass(slots=True)
class MediaResolver:
    fetcher: MediaFetcher
    max_bytes: int = _DEFAULT_MAX_BYTES
    timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS

    async def resolve(self, ref: MediaRef) -> ResolvedMedia:
        if ref.file_size is not None and ref.file_size > self.max_bytes:
            raise MediaTooLarge(
                f"{ref.source_id}: {ref.file_size} bytes exceeds limit {self.max_bytes}"
            )

        try:
            with anyio.fail_after(self.timeout_seconds):
                data = await self.fetcher.fetch(ref.source_id, max_bytes=self.max_bytes)
        except MediaResolveError:
            raise
        except TimeoutError as e:
            raise MediaDownloadFailed(
                f"{ref.source_id}: fetch timed out after {self.timeout_seconds}s"
            ) from e
        except Exception as e:
            raise MediaDownloadFailed(
                f"{ref.source_id}: {type(e).__name__}: {e}"
            ) from e

        if len(data) > self.max_bytes:
            raise MediaTooLarge(
                f"{ref.source_id}: {len(data)} bytes exceeds limit {self.max_bytes}"
            )

        return ResolvedMedia(
            data=data,
            mime_type=_guess_mime_type(ref),
            filename=ref.filename,
            caption=ref.caption,
        )


def _guess_mime_type(ref: MediaRef) -> str:
    if ref.mime_hint:
        return ref.mime_hint
    if ref.filename:
        guessed, _ = mimetypes.guess_type(ref.filename)
        if guessed:
            return guessed
    return "application/octet-stream"
