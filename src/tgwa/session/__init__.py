"""Outbound session persistence.

The outbound transport keeps its login state in `Config.session_dir`. The
relay zips that directory with `SessionArchive` and hands the blob to one of
the stores below, selected by `Config.session_backend`.
"""

from __future__ import annotations

from tgwa.config import Config
from tgwa.relay.lifecycle import SessionArchiver
from tgwa.relay.protocols import SessionStore

from .archive import SessionArchive, SessionArchiveError
from .stores import (
    EnvSessionStore,
    FileSessionStore,
    HttpSessionStore,
    NullSessionStore,
    SessionStoreError,
)


def session_store_from_config(config: Config) -> SessionStore:
    match config.session_backend:
        case "file" if config.session_file is not None:
            return FileSessionStore(path=config.session_file)
        case "env":
            return EnvSessionStore(var_name=config.session_env_var)
        case "http" if config.session_url:
            return HttpSessionStore(url=config.session_url, token=config.session_token)
        case "none":
            return NullSessionStore()
        case _:
            raise ValueError(
                f"session_backend={config.session_backend!r} is missing its settings"
            )


def session_archiver_from_config(config: Config) -> SessionArchiver | None:
    """Build the archiver wiring `session_dir` to the configured store.

    Returns `None` when session persistence is disabled.
    """

    if config.session_backend == "none":
        return None
    archive = SessionArchive(directory=config.session_dir)
    return SessionArchiver(
        store=session_store_from_config(config),
        pack=archive.pack,
        unpack=archive.unpack,
    )


__all__ = [
    "EnvSessionStore",
    "FileSessionStore",
    "HttpSessionStore",
    "NullSessionStore",
    "SessionArchive",
    "SessionArchiveError",
    "SessionStoreError",
    "session_archiver_from_config",
    "session_store_from_config",
]
