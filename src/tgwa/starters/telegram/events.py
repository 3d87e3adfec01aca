"""Telegram update helpers and the update -> `RelayJob` conversion."""

from __future__ import annotations

from typing import Any, Final

from tgwa.relay.jobs import (
    JobKind,
    MediaRef,
    RelayJob,
    TextPayload,
    poll_job,
    render_media_placeholder,
    text_job,
)

_SUPERGROUP_ID_PREFIX: Final[str] = "100"
_POST_KEYS: Final[tuple[str, ...]] = ("channel_post", "message")


def expand_chat_id_watchlist(chat_ids: set[int]) -> set[int]:
    """Expand a chat-id watchlist to be resilient to Telegram supergroup IDs.

    Channel and supergroup ids usually carry a `-100...` prefix (e.g.
    `-1001886218691`), but the shorter `-1886218691` form is easy to copy from
    other places. Both forms are accepted.
    """

    expanded: set[int] = set(chat_ids)
    for chat_id in list(chat_ids):
        if chat_id >= 0:
            continue

        abs_str = str(abs(chat_id))
        if abs_str.startswith(_SUPERGROUP_ID_PREFIX) and len(abs_str) > 3:
            expanded.add(-int(abs_str[3:]))
            continue

        expanded.add(-int(_SUPERGROUP_ID_PREFIX + abs_str))

    return expanded


def extract_update_id(update: dict[str, Any]) -> int | None:
    """Extract `update_id` from a Telegram update dict (or return `None`)."""

    update_id = update.get("update_id")
    if isinstance(update_id, int):
        return update_id
    return None


def filter_unseen_updates(
    updates: list[dict[str, Any]],
    *,
    last_processed_update_id: int | None,
) -> list[dict[str, Any]]:
    """Filter out updates that are already processed or duplicates in the batch."""

    res: list[dict[str, Any]] = []
    seen: set[int] = set()

    for update in updates:
        update_id = extract_update_id(update)
        if update_id is None:
            continue
        if (
            last_processed_update_id is not None
            and update_id <= last_processed_update_id
        ):
            continue
        if update_id in seen:
            continue
        seen.add(update_id)
        res.append(update)

    return res


def extract_post(update: dict[str, Any]) -> tuple[str, dict[str, Any]] | None:
    """Return `(key, message)` for a `channel_post` or `message` update."""

    for key in _POST_KEYS:
        post = update.get(key)
        if isinstance(post, dict):
            return key, post
    return None


def extract_chat_id(post: dict[str, Any]) -> int | None:
    chat = post.get("chat")
    chat_id = chat.get("id") if isinstance(chat, dict) else None
    return chat_id if isinstance(chat_id, int) else None


def extract_sender_id(post: dict[str, Any]) -> int | None:
    sender = post.get("from")
    sender_id = sender.get("id") if isinstance(sender, dict) else None
    return sender_id if isinstance(sender_id, int) else None


def _str_or_none(val: Any) -> str | None:
    return val if isinstance(val, str) and val else None


def _int_or_none(val: Any) -> int | None:
    return val if isinstance(val, int) else None


def _sticker_mime(sticker: dict[str, Any]) -> str:
    if sticker.get("is_animated") is True:
        return "application/x-tgsticker"
    if sticker.get("is_video") is True:
        return "video/webm"
    return "image/webp"


def _media_ref(post: dict[str, Any]) -> tuple[JobKind, MediaRef] | None:
    caption = _str_or_none(post.get("caption"))

    photo = post.get("photo")
    if isinstance(photo, list) and photo:
        # Telegram sends multiple sizes; the biggest is last.
        largest = photo[-1]
        if isinstance(largest, dict) and _str_or_none(largest.get("file_id")):
            return JobKind.PHOTO, MediaRef(
                source_id=largest["file_id"],
                mime_hint="image/jpeg",
                caption=caption,
                file_size=_int_or_none(largest.get("file_size")),
            )

    for key, kind, default_mime in (
        ("video", JobKind.VIDEO, "video/mp4"),
        ("document", JobKind.DOCUMENT, None),
        ("voice", JobKind.VOICE, "audio/ogg"),
        ("sticker", JobKind.STICKER, None),
    ):
        media = post.get(key)
        if not isinstance(media, dict):
            continue
        file_id = _str_or_none(media.get("file_id"))
        if file_id is None:
            return None
        mime = (
            _sticker_mime(media)
            if kind == JobKind.STICKER
            else _str_or_none(media.get("mime_type")) or default_mime
        )
        return kind, MediaRef(
            source_id=file_id,
            mime_hint=mime,
            filename=_str_or_none(media.get("file_name")),
            caption=caption,
            file_size=_int_or_none(media.get("file_size")),
        )

    return None


def post_to_job(post: dict[str, Any], *, forward_media: bool = True) -> RelayJob | None:
    """Convert a channel post (or message) into a `RelayJob`.

    Returns `None` for content the relay does not forward (service messages,
    locations, etc.). With `forward_media=False`, media posts become text jobs
    carrying a placeholder such as `📸 caption`.
    """

    message_id = _int_or_none(post.get("message_id"))

    text = _str_or_none(post.get("text"))
    if text is not None:
        return text_job(text, source_message_id=message_id)

    poll = post.get("poll")
    if isinstance(poll, dict):
        question = _str_or_none(poll.get("question")) or ""
        raw_options = poll.get("options")
        options = [
            opt["text"]
            for opt in (raw_options if isinstance(raw_options, list) else [])
            if isinstance(opt, dict) and isinstance(opt.get("text"), str)
        ]
        return poll_job(question, options, source_message_id=message_id)

    media = _media_ref(post)
    if media is None:
        return None
    kind, ref = media
    if not forward_media:
        return RelayJob(
            kind=kind,
            payload=TextPayload(text=render_media_placeholder(kind, ref)),
            source_message_id=message_id,
        )
    return RelayJob(kind=kind, payload=ref, source_message_id=message_id)
