"""Polling loop for the Telegram starter."""

from __future__ import annotations

import html
from logging import getLogger
from typing import Any

import anyio
from rich import print

from tgwa.relay.service import RelayService

from .api import TelegramBotApi, TelegramBotApiError
from .commands import ADMIN_COMMANDS, handle_admin_command, parse_command
from .events import (
    extract_chat_id,
    extract_post,
    extract_sender_id,
    extract_update_id,
    filter_unseen_updates,
    post_to_job,
)

logger = getLogger(__name__)

_MAX_BACKOFF_SECONDS = 30.0


async def handle_update(
    update: dict[str, Any],
    *,
    api: TelegramBotApi,
    service: RelayService,
    source_chat_ids: set[int] | None,
    admin_id: int | None,
    forward_media: bool,
) -> bool:
    """Route one update: admin command reply, or relay job submission.

    Returns whether a relay job was submitted.
    """

    extracted = extract_post(update)
    if extracted is None:
        return False
    key, post = extracted
    chat_id = extract_chat_id(post)

    text = post.get("text")
    if (
        key == "message"
        and admin_id is not None
        and extract_sender_id(post) == admin_id
        and isinstance(text, str)
        and parse_command(text) is not None
    ):
        reply = await handle_admin_command(text, service)
        if reply is None:
            reply = "Unknown command. Available: " + ", ".join(
                f"/{name}" for name in ADMIN_COMMANDS
            )
        if chat_id is not None:
            await api.send_message(chat_id=chat_id, text=html.escape(reply))
        return False

    if source_chat_ids is not None and chat_id not in source_chat_ids:
        return False

    job = post_to_job(post, forward_media=forward_media)
    if job is None:
        logger.debug("skipping unsupported post in chat %s", chat_id)
        return False
    return service.submit(job)


async def run_polling(
    *,
    api: TelegramBotApi,
    service: RelayService,
    source_chat_ids: set[int] | None,
    admin_id: int | None,
    forward_media: bool = True,
    timeout_seconds: int = 30,
) -> None:
    """Long-poll `getUpdates` forever, feeding posts into `service`."""

    last_consumed_update_id: int | None = None
    next_offset: int | None = None
    backoff_seconds = 1.0

    while True:
        try:
            updates = await api.get_updates(
                offset=next_offset,
                timeout_seconds=timeout_seconds,
            )
        except TelegramBotApiError as e:
            print(f"[red]Telegram poll error[/red]: {e}")
            await anyio.sleep(backoff_seconds)
            backoff_seconds = min(backoff_seconds * 2, _MAX_BACKOFF_SECONDS)
            continue

        backoff_seconds = 1.0
        if not updates:
            continue

        unseen_updates = filter_unseen_updates(
            updates,
            last_processed_update_id=last_consumed_update_id,
        )
        submitted = 0
        for update in unseen_updates:
            update_id = extract_update_id(update)
            if update_id is None:
                continue
            if last_consumed_update_id is None or update_id > last_consumed_update_id:
                last_consumed_update_id = update_id
            try:
                if await handle_update(
                    update,
                    api=api,
                    service=service,
                    source_chat_ids=source_chat_ids,
                    admin_id=admin_id,
                    forward_media=forward_media,
                ):
                    submitted += 1
            except TelegramBotApiError as e:
                print(f"[yellow]Telegram reply failed[/yellow]: {e}")

        if last_consumed_update_id is not None:
            next_offset = last_consumed_update_id + 1
        print(
            "[cyan]telegram recv[/cyan] "
            + f"updates={len(updates)} unseen={len(unseen_updates)} "
            + f"submitted={submitted} queue={service.queue.size()}"
        )
