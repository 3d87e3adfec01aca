import os
from pathlib import Path

import pytest
from pydantic import ValidationError

from tgwa.config import Config


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path: Path, monkeypatch) -> None:
    # Keep a developer's `.env` and `TGWA_*` variables out of these tests.
    monkeypatch.chdir(tmp_path)
    for key in list(os.environ):
        if key.startswith("TGWA_"):
            monkeypatch.delenv(key)


def test_defaults() -> None:
    config = Config()

    assert config.session_backend == "none"
    assert config.concurrent_messages == 5
    assert config.max_queue_size == 10_000
    assert config.overflow_policy == "drop_oldest"
    assert config.reconnect_min_seconds == 1.0
    assert config.session_dir.is_absolute()


def test_env_prefix_is_applied(monkeypatch) -> None:
    monkeypatch.setenv("TGWA_WHATSAPP_TARGET_NAME", "News Relay")
    monkeypatch.setenv("TGWA_TELEGRAM_SOURCE_CHAT_ID", "-1001234")

    config = Config()

    assert config.whatsapp_target_name == "News Relay"
    assert config.telegram_source_chat_id == -1001234


def test_dotenv_file_is_read(tmp_path: Path) -> None:
    (tmp_path / ".env").write_text("TGWA_CONCURRENT_MESSAGES=9\n")

    assert Config().concurrent_messages == 9


def test_session_dir_relative_path_resolves_from_cwd(tmp_path: Path) -> None:
    config = Config(session_dir=Path("state/session"))

    assert config.session_dir == (tmp_path / "state/session").resolve()


def test_file_backend_requires_session_file() -> None:
    with pytest.raises(ValidationError, match="requires session_file"):
        Config(session_backend="file")


def test_http_backend_requires_session_url() -> None:
    with pytest.raises(ValidationError, match="requires session_url"):
        Config(session_backend="http")


def test_reconnect_floor_is_never_below_one_second() -> None:
    assert Config(reconnect_min_seconds=0).reconnect_min_seconds == 1.0


def test_reconnect_max_must_not_be_below_min() -> None:
    with pytest.raises(ValidationError, match="reconnect_max_seconds"):
        Config(reconnect_min_seconds=10, reconnect_max_seconds=5)


def test_concurrency_must_be_positive() -> None:
    with pytest.raises(ValidationError, match="must be > 0"):
        Config(concurrent_messages=0)


def test_queue_cap_can_be_disabled() -> None:
    assert Config(max_queue_size=None).max_queue_size is None
