"""Outbound transport for a WhatsApp HTTP gateway.

Targets the REST surface of WAHA-style gateways (a headless WhatsApp Web
session behind HTTP). The gateway owns the browser/protocol session; this
client only starts it, polls its status and sends messages.

Status mapping (`GET /api/sessions/{session}`):
- `SCAN_QR_CODE` -> `qr` (payload from `/api/{session}/auth/qr?format=raw`); re-emitted
  whenever the code rotates while the status stays put
- `WORKING`      -> `authenticated`, then `ready`
- `FAILED`       -> `auth_failure` (session ends)
- `STOPPED`      -> `disconnected` (session ends)
- leaving `WORKING` for any other status -> `disconnected` (session ends)
"""

from __future__ import annotations

import base64
from logging import getLogger
from typing import Any, Final, Self

import anyio
import httpx

from tgwa.relay.lifecycle import LifecycleEvent
from tgwa.relay.protocols import ChatInfo, EventSink, MediaContent, SendOptions

logger = getLogger(__name__)

_GROUP_SUFFIX: Final[str] = "@g.us"
_SEND_ENDPOINTS: Final[dict[str, str]] = {
    "image": "/api/sendImage",
    "sticker": "/api/sendImage",
    "video": "/api/sendVideo",
    "document": "/api/sendFile",
    "voice": "/api/sendVoice",
}
_MAX_STATUS_ERRORS: Final[int] = 3


class WhatsAppGatewayError(RuntimeError):
    """Raised when the gateway returns a non-2xx response or invalid JSON."""


def _chat_id(raw: Any) -> str | None:
    if isinstance(raw, str) and raw:
        return raw
    if isinstance(raw, dict):
        serialized = raw.get("_serialized")
        if isinstance(serialized, str) and serialized:
            return serialized
    return None


def parse_chats(payload: Any) -> list[ChatInfo]:
    """Convert a gateway chat listing into `ChatInfo`s, skipping malformed rows."""

    if not isinstance(payload, list):
        raise WhatsAppGatewayError("chat listing is not a list")

    chats: list[ChatInfo] = []
    for item in payload:
        if not isinstance(item, dict):
            continue
        chat_id = _chat_id(item.get("id"))
        if chat_id is None:
            continue
        name = item.get("name")
        is_group = item.get("isGroup")
        chats.append(
            ChatInfo(
                id=chat_id,
                name=name if isinstance(name, str) else "",
                is_group=is_group
                if isinstance(is_group, bool)
                else chat_id.endswith(_GROUP_SUFFIX),
            )
        )
    return chats


class WhatsAppGatewayTransport:
    """`OutboundTransport` backed by a WhatsApp HTTP gateway."""

    def __init__(
        self,
        *,
        base_url: str,
        session: str = "default",
        api_key: str | None = None,
        status_poll_seconds: float = 2.0,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if status_poll_seconds <= 0:
            raise ValueError(
                f"status_poll_seconds must be > 0; got {status_poll_seconds}"
            )
        self.session = session
        self.status_poll_seconds = status_poll_seconds
        headers = {"Accept": "application/json"}
        if api_key:
            # Never log this header.
            headers["X-Api-Key"] = api_key
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
        )

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
        ok_statuses: tuple[int, ...] = (),
    ) -> Any:
        try:
            resp = await self._client.request(method, path, json=json, params=params)
        except httpx.HTTPError as e:
            raise WhatsAppGatewayError(
                f"{method} {path} failed: {type(e).__name__}: {e}"
            ) from e

        if resp.is_error and resp.status_code not in ok_statuses:
            raise WhatsAppGatewayError(f"{method} {path} failed: HTTP {resp.status_code}")
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise WhatsAppGatewayError(f"{method} {path} failed: invalid JSON") from e

    async def start_session(self) -> None:
        # 422 means the session is already running.
        await self._request(
            "POST",
            f"/api/sessions/{self.session}/start",
            ok_statuses=(422,),
        )

    async def close(self) -> None:
        try:
            await self._request(
                "POST",
                f"/api/sessions/{self.session}/stop",
                ok_statuses=(404, 422),
            )
        except WhatsAppGatewayError as e:
            logger.warning("gateway session stop failed: %s", e)

    async def get_status(self) -> str:
        payload = await self._request("GET", f"/api/sessions/{self.session}")
        status = payload.get("status") if isinstance(payload, dict) else None
        if not isinstance(status, str):
            raise WhatsAppGatewayError("session status missing from response")
        return status

    async def get_qr(self) -> str:
        payload = await self._request(
            "GET",
            f"/api/{self.session}/auth/qr",
            params={"format": "raw"},
        )
        value = payload.get("value") if isinstance(payload, dict) else None
        if not isinstance(value, str):
            raise WhatsAppGatewayError("QR value missing from response")
        return value

    async def run_session(self, emit: EventSink) -> None:
        await self.start_session()

        last_status: str | None = None
        last_qr: str | None = None
        errors = 0
        while True:
            try:
                status = await self.get_status()
            except WhatsAppGatewayError as e:
                errors += 1
                logger.warning(
                    "gateway status poll failed (%d/%d): %s",
                    errors,
                    _MAX_STATUS_ERRORS,
                    e,
                )
                if errors >= _MAX_STATUS_ERRORS:
                    emit(LifecycleEvent.disconnected(f"gateway unreachable: {e}"))
                    return
                await anyio.sleep(self.status_poll_seconds)
                continue
            errors = 0

            if status != last_status:
                logger.info(
                    "gateway session %s: %s -> %s", self.session, last_status, status
                )
                previous, last_status = last_status, status
                match status:
                    case "SCAN_QR_CODE":
                        last_qr = await self._qr_or_empty()
                        emit(LifecycleEvent.qr_needed(last_qr))
                    case "WORKING":
                        emit(LifecycleEvent.authenticated())
                        emit(LifecycleEvent.ready())
                    case "FAILED":
                        emit(LifecycleEvent.auth_failure("gateway session failed"))
                        return
                    case "STOPPED":
                        emit(LifecycleEvent.disconnected("gateway session stopped"))
                        return
                    case _ if previous == "WORKING":
                        emit(LifecycleEvent.disconnected(f"gateway session {status}"))
                        return
            elif status == "SCAN_QR_CODE":
                # The gateway rotates the code while waiting for a scan.
                qr = await self._qr_or_empty()
                if qr and qr != last_qr:
                    last_qr = qr
                    emit(LifecycleEvent.qr_needed(qr))

            await anyio.sleep(self.status_poll_seconds)

    async def _qr_or_empty(self) -> str:
        try:
            return await self.get_qr()
        except WhatsAppGatewayError as e:
            logger.warning("QR fetch failed: %s", e)
            return ""

    async def list_chats(self) -> list[ChatInfo]:
        payload = await self._request("GET", f"/api/{self.session}/chats")
        return parse_chats(payload)

    async def send_message(
        self,
        chat_id: str,
        content: str | MediaContent,
        options: SendOptions,
    ) -> None:
        if isinstance(content, str):
            await self._request(
                "POST",
                "/api/sendText",
                json={"session": self.session, "chatId": chat_id, "text": content},
            )
            return

        body: dict[str, Any] = {
            "session": self.session,
            "chatId": chat_id,
            "file": {
                "mimetype": content.mime_type,
                "filename": content.filename,
                "data": base64.b64encode(content.data).decode("ascii"),
            },
        }
        if options.caption and options.send_as != "voice":
            body["caption"] = options.caption
        endpoint = _SEND_ENDPOINTS.get(options.send_as, "/api/sendFile")
        await self._request("POST", endpoint, json=body)
