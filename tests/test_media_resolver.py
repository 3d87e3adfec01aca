import anyio
import pytest

from tgwa.relay import (
    MediaDownloadFailed,
    MediaNotFound,
    MediaRef,
    MediaResolver,
    MediaTooLarge,
)


class _Fetcher:
    def __init__(self, result: bytes | BaseException, *, delay: float = 0.0) -> None:
        self.result = result
        self.delay = delay
        self.calls: list[tuple[str, int]] = []

    async def fetch(self, file_id: str, *, max_bytes: int) -> bytes:
        self.calls.append((file_id, max_bytes))
        if self.delay:
            await anyio.sleep(self.delay)
        if isinstance(self.result, BaseException):
            raise self.result
        return self.result


@pytest.mark.anyio
async def test_resolve_returns_bytes_with_hinted_mime() -> None:
    fetcher = _Fetcher(b"ogg-bytes")
    resolver = MediaResolver(fetcher=fetcher, max_bytes=1024)

    media = await resolver.resolve(
        MediaRef(source_id="voice-1", mime_hint="audio/ogg", caption="hi")
    )

    assert media.data == b"ogg-bytes"
    assert media.mime_type == "audio/ogg"
    assert media.caption == "hi"
    assert fetcher.calls == [("voice-1", 1024)]


@pytest.mark.anyio
async def test_resolve_guesses_mime_from_filename() -> None:
    resolver = MediaResolver(fetcher=_Fetcher(b"%PDF"))

    media = await resolver.resolve(MediaRef(source_id="doc", filename="report.pdf"))

    assert media.mime_type == "application/pdf"
    assert media.filename == "report.pdf"


@pytest.mark.anyio
async def test_resolve_falls_back_to_octet_stream() -> None:
    resolver = MediaResolver(fetcher=_Fetcher(b"??"))

    media = await resolver.resolve(MediaRef(source_id="blob"))

    assert media.mime_type == "application/octet-stream"


@pytest.mark.anyio
async def test_declared_size_over_limit_skips_download() -> None:
    fetcher = _Fetcher(b"x")
    resolver = MediaResolver(fetcher=fetcher, max_bytes=10)

    with pytest.raises(MediaTooLarge, match="exceeds limit 10"):
        await resolver.resolve(MediaRef(source_id="big", file_size=11))
    assert fetcher.calls == []


@pytest.mark.anyio
async def test_downloaded_size_over_limit_is_rejected() -> None:
    resolver = MediaResolver(fetcher=_Fetcher(b"x" * 11), max_bytes=10)

    with pytest.raises(MediaTooLarge):
        await resolver.resolve(MediaRef(source_id="big"))


@pytest.mark.anyio
async def test_fetcher_media_errors_pass_through() -> None:
    resolver = MediaResolver(fetcher=_Fetcher(MediaNotFound("gone")))

    with pytest.raises(MediaNotFound, match="gone"):
        await resolver.resolve(MediaRef(source_id="gone"))


@pytest.mark.anyio
async def test_other_fetch_errors_become_download_failed() -> None:
    resolver = MediaResolver(fetcher=_Fetcher(ConnectionResetError("reset")))

    with pytest.raises(MediaDownloadFailed, match="ConnectionResetError: reset"):
        await resolver.resolve(MediaRef(source_id="f"))


@pytest.mark.anyio
async def test_slow_fetch_times_out() -> None:
    resolver = MediaResolver(
        fetcher=_Fetcher(b"late", delay=1), timeout_seconds=0.02
    )

    with pytest.raises(MediaDownloadFailed, match="timed out"):
        await resolver.resolve(MediaRef(source_id="slow"))
