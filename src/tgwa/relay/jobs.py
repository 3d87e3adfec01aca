"""Relay job models.

A `RelayJob` is one unit of inbound content waiting to be forwarded. Jobs are
immutable; a failed send produces a new job via :meth:`RelayJob.retry`.
"""

from __future__ import annotations

import datetime
from enum import StrEnum
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class JobKind(StrEnum):
    TEXT = "text"
    PHOTO = "photo"
    VIDEO = "video"
    DOCUMENT = "document"
    STICKER = "sticker"
    VOICE = "voice"
    POLL = "poll"
    RETRY = "retry"


class TextPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    text: str


class MediaRef(BaseModel):
    """Reference to inbound media that still has to be downloaded."""

    model_config = ConfigDict(frozen=True)

    type: Literal["media_ref"] = "media_ref"
    source_id: str
    mime_hint: str | None = None
    filename: str | None = None
    caption: str | None = None
    file_size: int | None = None


class ResolvedMedia(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["media"] = "media"
    data: bytes = Field(repr=False)
    mime_type: str
    filename: str | None = None
    caption: str | None = None


type Payload = TextPayload | MediaRef | ResolvedMedia


def _utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


def _new_job_id() -> str:
    return uuid4().hex


class RelayJob(BaseModel):
    """One unit of work for the dispatch loop.

    `origin_kind` is the kind of the content itself. It equals `kind` for fresh
    jobs and is preserved when a failed job is re-queued as a `retry`.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_job_id)
    kind: JobKind
    origin_kind: JobKind | None = None
    payload: Payload = Field(discriminator="type")
    enqueued_at: datetime.datetime = Field(default_factory=_utc_now)
    attempts: int = Field(default=0, ge=0)
    source_message_id: int | None = None

    @property
    def content_kind(self) -> JobKind:
        return self.origin_kind or self.kind

    @property
    def label(self) -> str:
        """Short label for log lines, e.g. `photo` or `retry(photo)`."""

        if self.kind == JobKind.RETRY:
            return f"retry({self.content_kind})"
        return str(self.kind)

    @property
    def needs_resolution(self) -> bool:
        return isinstance(self.payload, MediaRef)

    def retry(self) -> RelayJob:
        """Return the re-queued copy of this job after a failed send."""

        return self.model_copy(
            update={
                "kind": JobKind.RETRY,
                "origin_kind": self.content_kind,
                "attempts": self.attempts + 1,
            }
        )

    def with_payload(self, payload: Payload) -> RelayJob:
        return self.model_copy(update={"payload": payload})

    def age_seconds(self, now: datetime.datetime | None = None) -> float:
        now = now or _utc_now()
        return (now - self.enqueued_at).total_seconds()


def text_job(text: str, *, source_message_id: int | None = None) -> RelayJob:
    return RelayJob(
        kind=JobKind.TEXT,
        payload=TextPayload(text=text),
        source_message_id=source_message_id,
    )


def poll_job(
    question: str,
    options: list[str],
    *,
    source_message_id: int | None = None,
) -> RelayJob:
    """Render a poll as plain text; WhatsApp groups receive it as a message."""

    lines = [f"📊 {question}"]
    lines.extend(f"{i}. {option}" for i, option in enumerate(options, start=1))
    return RelayJob(
        kind=JobKind.POLL,
        payload=TextPayload(text="\n".join(lines)),
        source_message_id=source_message_id,
    )


_PLACEHOLDER_ICONS: dict[JobKind, tuple[str, str]] = {
    JobKind.PHOTO: ("📸", "Photo"),
    JobKind.VIDEO: ("🎥", "Video"),
    JobKind.DOCUMENT: ("📎", "Document"),
    JobKind.STICKER: ("🏷️", "Sticker"),
    JobKind.VOICE: ("🎤", "Voice message"),
}


def render_media_placeholder(kind: JobKind, ref: MediaRef) -> str:
    """Text stand-in for a media post when media forwarding is disabled.

    Documents show the file name followed by the caption on its own line; the
    other kinds show the caption or a generic label.
    """

    icon, fallback = _PLACEHOLDER_ICONS.get(kind, ("📎", "Attachment"))
    if kind == JobKind.DOCUMENT:
        name = ref.filename or fallback
        return f"{icon} {name}" + (f"\n{ref.caption}" if ref.caption else "")
    return f"{icon} {ref.caption or fallback}"
