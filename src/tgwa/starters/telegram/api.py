"""Telegram Bot API client used by the long-poll starter."""

from __future__ import annotations

import html
import json
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any, Final

import anyio.to_thread as to_thread

from tgwa.relay.media import MediaNotFound, MediaTooLarge

_TELEGRAM_API_BASE: Final[str] = "https://api.telegram.org"
_DOWNLOAD_CHUNK_BYTES: Final[int] = 64 * 1024
_NOT_FOUND_MARKERS: Final[tuple[str, ...]] = (
    "file not found",
    "wrong file_id",
    "wrong file id",
    "invalid file_id",
)


class TelegramBotApiError(RuntimeError):
    """Raised when Telegram Bot API returns a non-ok response or invalid JSON."""

    def __init__(self, message: str, *, description: str | None = None) -> None:
        super().__init__(message)
        self.description = description


def _http_error_description(e: urllib.error.HTTPError) -> str | None:
    try:
        payload = json.loads(e.read().decode("utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError):
        return None
    desc = payload.get("description") if isinstance(payload, dict) else None
    return desc if isinstance(desc, str) and desc else None


@dataclass(slots=True)
class TelegramBotApi:
    """Minimal Telegram Bot API client: polling, replies and file downloads.

    Also serves as the relay's `MediaFetcher` via :meth:`fetch`.
    """

    token: str

    def _method_url(self, method: str) -> str:
        # Never log/print this URL; it embeds the bot token.
        return f"{_TELEGRAM_API_BASE}/bot{self.token}/{method}"

    def _file_url(self, file_path: str) -> str:
        # Never log/print this URL; it embeds the bot token.
        return f"{_TELEGRAM_API_BASE}/file/bot{self.token}/{file_path}"

    def _call_sync(
        self,
        method: str,
        params: dict[str, Any],
        *,
        post: bool = False,
        timeout: float = 10,
    ) -> Any:
        encoded = urllib.parse.urlencode(params)
        if post:
            request = urllib.request.Request(
                self._method_url(method),
                data=encoded.encode("utf-8"),
                method="POST",
            )
            request.add_header("Content-Type", "application/x-www-form-urlencoded")
        else:
            url = self._method_url(method) + (f"?{encoded}" if encoded else "")
            request = urllib.request.Request(url, method="GET")

        try:
            with urllib.request.urlopen(request, timeout=timeout) as resp:
                raw = resp.read()
        except urllib.error.HTTPError as e:
            desc = _http_error_description(e)
            raise TelegramBotApiError(
                f"Telegram {method} failed: HTTP {e.code}"
                + (f": {desc}" if desc else ""),
                description=desc,
            ) from e
        except (urllib.error.URLError, TimeoutError) as e:
            raise TelegramBotApiError(f"Telegram {method} failed: network error") from e

        try:
            payload = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise TelegramBotApiError(f"Telegram {method} failed: invalid JSON") from e

        if not isinstance(payload, dict) or payload.get("ok") is not True:
            desc = payload.get("description") if isinstance(payload, dict) else None
            desc = desc if isinstance(desc, str) and desc else None
            raise TelegramBotApiError(
                f"Telegram {method} failed" + (f": {desc}" if desc else ""),
                description=desc,
            )

        return payload.get("result")

    def _send_message_sync(
        self,
        *,
        chat_id: int,
        text: str,
        reply_to_message_id: int | None = None,
        parse_mode: str = "HTML",
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": parse_mode,
        }
        if reply_to_message_id is not None:
            params["reply_to_message_id"] = reply_to_message_id

        result = self._call_sync("sendMessage", params, post=True)
        if not isinstance(result, dict):
            raise TelegramBotApiError("Telegram sendMessage failed: missing result dict")
        return result

    async def send_message(
        self,
        *,
        chat_id: int,
        text: str,
        reply_to_message_id: int | None = None,
    ) -> dict[str, Any]:
        """Send a message via `sendMessage` (async wrapper).

        Uses `parse_mode="HTML"`; callers escape untrusted text.
        """

        # Telegram rejects NUL-containing strings.
        safe_text = text.replace("\x00", "\ufffd")
        return await to_thread.run_sync(
            lambda: self._send_message_sync(
                chat_id=chat_id,
                text=safe_text,
                reply_to_message_id=reply_to_message_id,
                parse_mode="HTML",
            )
        )

    def _get_me_sync(self) -> dict[str, Any]:
        result = self._call_sync("getMe", {})
        if not isinstance(result, dict):
            raise TelegramBotApiError("Telegram getMe failed: missing result dict")
        return result

    async def get_me(self) -> dict[str, Any]:
        """Fetch bot metadata via `getMe` (async wrapper)."""

        return await to_thread.run_sync(self._get_me_sync)

    def _get_updates_sync(
        self,
        *,
        offset: int | None,
        timeout_seconds: int,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {
            "timeout": timeout_seconds,
            "limit": 100,
            "allowed_updates": json.dumps(["message", "channel_post"]),
        }
        if offset is not None:
            params["offset"] = offset

        # Client timeout should exceed server long-poll timeout.
        result = self._call_sync(
            "getUpdates", params, timeout=max(5, timeout_seconds + 15)
        )
        if not isinstance(result, list):
            raise TelegramBotApiError("Telegram getUpdates failed: missing result list")
        return [item for item in result if isinstance(item, dict)]

    async def get_updates(
        self,
        *,
        offset: int | None,
        timeout_seconds: int,
    ) -> list[dict[str, Any]]:
        """Long-poll `getUpdates` (async wrapper).

        Note: stdlib `urllib` is blocking; this runs the request in a worker
        thread so the relay's tasks keep running.
        """

        return await to_thread.run_sync(
            lambda: self._get_updates_sync(
                offset=offset, timeout_seconds=timeout_seconds
            )
        )

    def _get_file_sync(self, *, file_id: str) -> dict[str, Any]:
        result = self._call_sync("getFile", {"file_id": file_id})
        if not isinstance(result, dict):
            raise TelegramBotApiError("Telegram getFile failed: missing result dict")
        return result

    async def get_file(self, *, file_id: str) -> dict[str, Any]:
        """Resolve a `file_id` to its `File` object (`file_path`, `file_size`).

        Cancellable: on timeout the worker thread is abandoned and finishes on
        its own.
        """

        return await to_thread.run_sync(
            lambda: self._get_file_sync(file_id=file_id), abandon_on_cancel=True
        )

    def _download_file_sync(self, file_path: str, *, max_bytes: int) -> bytes:
        request = urllib.request.Request(self._file_url(file_path), method="GET")
        chunks: list[bytes] = []
        total = 0
        try:
            with urllib.request.urlopen(request, timeout=30) as resp:
                while chunk := resp.read(_DOWNLOAD_CHUNK_BYTES):
                    total += len(chunk)
                    if total > max_bytes:
                        raise MediaTooLarge(
                            f"{file_path}: download exceeds limit {max_bytes}"
                        )
                    chunks.append(chunk)
        except urllib.error.HTTPError as e:
            if e.code == 404:
                raise MediaNotFound(f"{file_path}: HTTP 404") from e
            raise TelegramBotApiError(
                f"Telegram file download failed: HTTP {e.code}"
            ) from e
        except (urllib.error.URLError, TimeoutError) as e:
            raise TelegramBotApiError(
                "Telegram file download failed: network error"
            ) from e
        return b"".join(chunks)

    async def download_file(self, file_path: str, *, max_bytes: int) -> bytes:
        return await to_thread.run_sync(
            lambda: self._download_file_sync(file_path, max_bytes=max_bytes),
            abandon_on_cancel=True,
        )

    async def fetch(self, file_id: str, *, max_bytes: int) -> bytes:
        """Download a file by id, mapping Bot API errors to media errors.

        Bot API only serves files up to 20 MB; larger ones surface as
        `MediaTooLarge`.
        """

        try:
            file = await self.get_file(file_id=file_id)
        except TelegramBotApiError as e:
            desc = (e.description or "").lower()
            if "file is too big" in desc:
                raise MediaTooLarge(f"{file_id}: {e.description}") from e
            if any(marker in desc for marker in _NOT_FOUND_MARKERS):
                raise MediaNotFound(f"{file_id}: {e.description}") from e
            raise

        file_size = file.get("file_size")
        if isinstance(file_size, int) and file_size > max_bytes:
            raise MediaTooLarge(f"{file_id}: {file_size} bytes exceeds limit {max_bytes}")
        file_path = file.get("file_path")
        if not isinstance(file_path, str) or not file_path:
            raise MediaNotFound(f"{file_id}: no file_path in getFile result")
        return await self.download_file(file_path, max_bytes=max_bytes)


@dataclass(slots=True)
class TelegramAdminNotifier:
    """`Notifier` that messages the bot admin's private chat."""

    api: TelegramBotApi
    chat_id: int

    async def notify(self, text: str) -> None:
        await self.api.send_message(chat_id=self.chat_id, text=html.escape(text))
