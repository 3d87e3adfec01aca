"""WhatsApp outbound transport."""

from __future__ import annotations

from .gateway import WhatsAppGatewayError, WhatsAppGatewayTransport, parse_chats

__all__ = ["WhatsAppGatewayError", "WhatsAppGatewayTransport", "parse_chats"]
