"""Transports for the external store."""
from .http import HttpChatStore, parse_snapshot

__all__ = ["HttpChatStore", "parse_snapshot"]
