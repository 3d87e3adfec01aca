"""Admin commands accepted from the bot admin's private chat."""

from __future__ import annotations

from typing import Final

from tgwa.relay.service import RelayService, RelayStatus

ADMIN_COMMANDS: Final[tuple[str, ...]] = (
    "status",
    "savesession",
    "clearqueue",
    "reconnect",
)


def parse_command(text: str) -> str | None:
    """Return the bare command name for `/cmd`, `/cmd@BotName` or `/cmd args`."""

    if not text.startswith("/"):
        return None
    head = text[1:].split(maxsplit=1)[0] if text[1:].strip() else ""
    name = head.split("@", 1)[0].lower()
    return name or None


def _format_uptime(seconds: float) -> str:
    total = int(seconds)
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    return f"{hours}h {minutes}m {secs}s"


def render_status(status: RelayStatus, *, target_name: str) -> str:
    lines = [
        "📊 Bridge status",
        f"- WhatsApp ready: {'yes' if status.ready else 'no'}",
        f"- State: {status.state}",
        f"- Target: {status.destination_name or target_name or '(unset)'}"
        + ("" if status.destination_resolved else " (not resolved)"),
        f"- Queue: {status.queue_size}",
        f"- Sent: {status.sent_total}, dropped: {status.dropped_total}",
        f"- Reconnect attempts: {status.reconnect_attempts}",
        f"- Uptime: {_format_uptime(status.uptime_seconds)}",
    ]
    return "\n".join(lines)


async def handle_admin_command(text: str, service: RelayService) -> str | None:
    """Run an admin command and return the reply text.

    Returns `None` when `text` is not a known command.
    """

    match parse_command(text):
        case "status":
            reply = render_status(
                service.status(), target_name=service.lifecycle.target_name
            )
            diagnostic = service.lifecycle.last_diagnostic
            if diagnostic is not None:
                reply += "\n\n" + diagnostic.render()
            return reply
        case "savesession":
            if service.lifecycle.archiver is None:
                return "⚠️ Session persistence is disabled."
            if await service.lifecycle.backup_session():
                return "💾 Session saved."
            return "❌ Session save failed; see logs."
        case "clearqueue":
            dropped = service.clear_queue()
            return f"🗑️ Cleared {dropped} queued message(s)."
        case "reconnect":
            await service.lifecycle.reconnect()
            return "🔄 Reconnecting to WhatsApp..."
        case _:
            return None
