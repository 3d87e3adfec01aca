import time

import pytest

from tgwa.relay import (
    MediaDownloadFailed,
    MediaNotFound,
    MediaRef,
    MediaResolver,
    MediaTooLarge,
)
from tgwa.starters.telegram import (
    TelegramAdminNotifier,
    TelegramBotApi,
    TelegramBotApiError,
)


@pytest.mark.anyio
async def test_telegram_bot_api_async_wrappers_call_sync_impl(monkeypatch) -> None:
    api = TelegramBotApi(token="test-token")

    got_me_called = False
    got_updates: tuple[int | None, int] | None = None
    got_send_message: tuple[int, str, int | None, str] | None = None

    def fake_get_me_sync(self):
        nonlocal got_me_called
        got_me_called = True
        return {"id": 123, "username": "RelayBot"}

    def fake_get_updates_sync(self, *, offset: int | None, timeout_seconds: int):
        nonlocal got_updates
        got_updates = (offset, timeout_seconds)
        return [{"update_id": 1, "channel_post": {"text": "hi"}}]

    def fake_send_message_sync(
        self,
        *,
        chat_id: int,
        text: str,
        reply_to_message_id: int | None = None,
        parse_mode: str = "HTML",
    ):
        nonlocal got_send_message
        got_send_message = (chat_id, text, reply_to_message_id, parse_mode)
        return {"message_id": 999}

    monkeypatch.setattr(TelegramBotApi, "_get_me_sync", fake_get_me_sync)
    monkeypatch.setattr(TelegramBotApi, "_get_updates_sync", fake_get_updates_sync)
    monkeypatch.setattr(TelegramBotApi, "_send_message_sync", fake_send_message_sync)

    me = await api.get_me()
    assert got_me_called is True
    assert me["id"] == 123

    updates = await api.get_updates(offset=5, timeout_seconds=12)
    assert got_updates == (5, 12)
    assert updates[0]["update_id"] == 1

    msg = await api.send_message(chat_id=42, text="hello\x00", reply_to_message_id=7)
    assert got_send_message == (42, "hello\ufffd", 7, "HTML")
    assert msg["message_id"] == 999


@pytest.mark.anyio
async def test_fetch_downloads_resolved_file_path(monkeypatch) -> None:
    api = TelegramBotApi(token="test-token")
    downloads: list[tuple[str, int]] = []

    def fake_get_file_sync(self, *, file_id: str):
        assert file_id == "AgAD"
        return {"file_id": file_id, "file_path": "photos/file_1.jpg", "file_size": 3}

    def fake_download_file_sync(self, file_path: str, *, max_bytes: int):
        downloads.append((file_path, max_bytes))
        return b"jpg"

    monkeypatch.setattr(TelegramBotApi, "_get_file_sync", fake_get_file_sync)
    monkeypatch.setattr(TelegramBotApi, "_download_file_sync", fake_download_file_sync)

    assert await api.fetch("AgAD", max_bytes=1024) == b"jpg"
    assert downloads == [("photos/file_1.jpg", 1024)]


@pytest.mark.parametrize(
    ("description", "expected"),
    [
        ("Bad Request: file is too big", MediaTooLarge),
        ("Bad Request: wrong file_id or the file is temporarily unavailable", MediaNotFound),
        ("Bad Request: invalid file_id", MediaNotFound),
    ],
)
@pytest.mark.anyio
async def test_fetch_maps_bot_api_errors(
    monkeypatch, description: str, expected: type[Exception]
) -> None:
    def fake_get_file_sync(self, *, file_id: str):
        raise TelegramBotApiError(
            f"Telegram getFile failed: HTTP 400: {description}",
            description=description,
        )

    monkeypatch.setattr(TelegramBotApi, "_get_file_sync", fake_get_file_sync)

    with pytest.raises(expected):
        await TelegramBotApi(token="t").fetch("x", max_bytes=10)


@pytest.mark.anyio
async def test_fetch_reraises_unrelated_api_errors(monkeypatch) -> None:
    def fake_get_file_sync(self, *, file_id: str):
        raise TelegramBotApiError("Telegram getFile failed: network error")

    monkeypatch.setattr(TelegramBotApi, "_get_file_sync", fake_get_file_sync)

    with pytest.raises(TelegramBotApiError, match="network error"):
        await TelegramBotApi(token="t").fetch("x", max_bytes=10)


@pytest.mark.anyio
async def test_fetch_rejects_declared_size_over_limit(monkeypatch) -> None:
    def fake_get_file_sync(self, *, file_id: str):
        return {"file_id": file_id, "file_path": "videos/v.mp4", "file_size": 50}

    def fake_download_file_sync(self, file_path: str, *, max_bytes: int):
        raise AssertionError("should not download")

    monkeypatch.setattr(TelegramBotApi, "_get_file_sync", fake_get_file_sync)
    monkeypatch.setattr(TelegramBotApi, "_download_file_sync", fake_download_file_sync)

    with pytest.raises(MediaTooLarge, match="50 bytes"):
        await TelegramBotApi(token="t").fetch("x", max_bytes=10)


@pytest.mark.anyio
async def test_admin_notifier_escapes_html(monkeypatch) -> None:
    sent: list[tuple[int, str]] = []

    def fake_send_message_sync(self, *, chat_id, text, reply_to_message_id=None, parse_mode="HTML"):
        sent.append((chat_id, text))
        return {"message_id": 1}

    monkeypatch.setattr(TelegramBotApi, "_send_message_sync", fake_send_message_sync)
    notifier = TelegramAdminNotifier(api=TelegramBotApi(token="t"), chat_id=7)

    await notifier.notify("Target chat not found: '<Group>'")

    assert sent == [(7, "Target chat not found: &#x27;&lt;Group&gt;&#x27;")]


@pytest.mark.anyio
async def test_resolver_timeout_cuts_off_blocking_get_file(monkeypatch) -> None:
    def slow_get_file_sync(self, *, file_id: str):
        time.sleep(1.5)
        return {"file_id": file_id, "file_path": "photos/late.jpg"}

    monkeypatch.setattr(TelegramBotApi, "_get_file_sync", slow_get_file_sync)
    resolver = MediaResolver(fetcher=TelegramBotApi(token="t"), timeout_seconds=0.1)

    started = time.monotonic()
    with pytest.raises(MediaDownloadFailed, match="timed out"):
        await resolver.resolve(MediaRef(source_id="slow"))

    assert time.monotonic() - started < 1.0
