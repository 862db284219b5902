"""Subscription and connection managers."""
from .connection import ConnectionManager

__all__ = ["ConnectionManager"]
