"""CLI entrypoint for the Telegram -> WhatsApp relay."""

from __future__ import annotations

import argparse
import functools
import logging
from typing import Any

import logfire
from rich import print

from tgwa.config import Config
from tgwa.relay.service import RelayService
from tgwa.session import session_archiver_from_config
from tgwa.whatsapp import WhatsAppGatewayTransport

from .api import TelegramAdminNotifier, TelegramBotApi, TelegramBotApiError
from .events import expand_chat_id_watchlist
from .runner import run_polling


def _parse_cli_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="tgwa",
        description="Relay Telegram channel posts into a WhatsApp group.",
    )
    parser.add_argument(
        "--target-name",
        default=None,
        help="WhatsApp group name to post into (overrides TGWA_WHATSAPP_TARGET_NAME).",
    )
    parser.add_argument(
        "--match",
        choices=["exact", "substring"],
        default=None,
        help="How --target-name is compared against chat names.",
    )
    parser.add_argument(
        "--source-chat-id",
        type=int,
        default=None,
        help="Telegram channel id to relay (overrides TGWA_TELEGRAM_SOURCE_CHAT_ID).",
    )
    return parser.parse_args(argv)


async def run(config: Config) -> None:
    """Function entrypoint: run the relay service and the Telegram poller."""

    if not config.telegram_bot_token:
        raise ValueError("TGWA_TELEGRAM_BOT_TOKEN is required")
    if not config.whatsapp_target_name.strip():
        raise ValueError("TGWA_WHATSAPP_TARGET_NAME is required")

    api = TelegramBotApi(token=config.telegram_bot_token)
    try:
        me = await api.get_me()
    except TelegramBotApiError as e:
        print(f"[yellow]Telegram getMe failed[/yellow]: {e}")
        me = {}

    notifier = (
        TelegramAdminNotifier(api=api, chat_id=config.telegram_admin_id)
        if config.telegram_admin_id is not None
        else None
    )
    source_chat_ids = (
        expand_chat_id_watchlist({config.telegram_source_chat_id})
        if config.telegram_source_chat_id is not None
        else None
    )

    async with WhatsAppGatewayTransport(
        base_url=config.whatsapp_api_url,
        session=config.whatsapp_session,
        api_key=config.whatsapp_api_key,
        status_poll_seconds=config.whatsapp_status_poll_seconds,
        timeout_seconds=config.send_timeout_seconds,
    ) as transport:
        service = RelayService.from_config(
            config,
            transport=transport,
            fetcher=api if config.forward_media else None,
            archiver=session_archiver_from_config(config),
            notifier=notifier,
        )

        print(
            "\n".join(
                [
                    "Telegram -> WhatsApp relay running (polling getUpdates).",
                    f"- bot_username: {me.get('username')}",
                    f"- source_chat_ids: {sorted(source_chat_ids) if source_chat_ids is not None else None}",
                    f"- admin_id: {config.telegram_admin_id}",
                    f"- whatsapp_api_url: {config.whatsapp_api_url}",
                    f"- target: {config.whatsapp_target_name!r} ({config.whatsapp_match})",
                    f"- forward_media: {config.forward_media}",
                    f"- session_backend: {config.session_backend}",
                    f"- max_queue_size: {config.max_queue_size} ({config.overflow_policy})",
                ]
            )
        )

        await service.serve(
            functools.partial(
                run_polling,
                api=api,
                service=service,
                source_chat_ids=source_chat_ids,
                admin_id=config.telegram_admin_id,
                forward_media=config.forward_media,
                timeout_seconds=config.telegram_poll_timeout_seconds,
            )
        )


async def main() -> None:
    """CLI entrypoint."""

    args = _parse_cli_args()

    logfire.configure()
    logging.basicConfig(level=logging.INFO, handlers=[logfire.LogfireLoggingHandler()])

    overrides: dict[str, Any] = {}
    if args.target_name is not None:
        overrides["whatsapp_target_name"] = args.target_name
    if args.match is not None:
        overrides["whatsapp_match"] = args.match
    if args.source_chat_id is not None:
        overrides["telegram_source_chat_id"] = args.source_chat_id

    await run(Config(**overrides))
