"""Runnable entrypoints that connect an inbound source to the relay."""
