"""Telegram channel -> WhatsApp group relay."""
