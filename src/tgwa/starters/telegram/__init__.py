"""Telegram long-poll starter.

This package polls the Telegram Bot API `getUpdates` endpoint and hands
channel posts to a :class:`tgwa.relay.RelayService`, which forwards them into
the configured WhatsApp group.

Design notes / boundaries:
- This is a polling (no webhook) starter.
- Only `channel_post` and `message` updates are consumed. When a source chat
  id is configured, posts from other chats are ignored; both the `-100...` and
  the short form of a channel id are accepted.
- Text, photos (largest size), videos, documents, stickers, voice notes and
  polls are relayed. Polls arrive in WhatsApp as numbered text.
- Media is not downloaded here; jobs carry a `file_id` reference that the
  relay resolves through `TelegramBotApi.fetch` right before sending.
- Messages from the admin id that start with `/` are admin commands
  (`/status`, `/savesession`, `/clearqueue`, `/reconnect`) and are answered in
  the same chat instead of being relayed.
- The starter tracks the latest consumed `update_id` in-memory only.
  - Restarts may reprocess updates that are still pending server-side.
"""

from __future__ import annotations

from .api import TelegramAdminNotifier, TelegramBotApi, TelegramBotApiError
from .cli import main, run
from .commands import handle_admin_command, parse_command, render_status
from .events import (
    expand_chat_id_watchlist,
    extract_chat_id,
    extract_post,
    extract_sender_id,
    extract_update_id,
    filter_unseen_updates,
    post_to_job,
)
from .runner import handle_update, run_polling

__all__ = [
    "TelegramAdminNotifier",
    "TelegramBotApi",
    "TelegramBotApiError",
    "expand_chat_id_watchlist",
    "extract_chat_id",
    "extract_post",
    "extract_sender_id",
    "extract_update_id",
    "filter_unseen_updates",
    "handle_admin_command",
    "handle_update",
    "main",
    "parse_command",
    "post_to_job",
    "render_status",
    "run",
    "run_polling",
]
