"""
threadline: resumable AI response streams and branch/version navigation for chat messages.
"""
from .core import ChatCore
from .errors import NavigationError, NavigationErrorKind, StreamError, StreamErrorKind, ThreadlineError, TransportError

__version__ = "0.1.0"

__all__ = [
    "ChatCore",
    "NavigationError",
    "NavigationErrorKind",
    "StreamError",
    "StreamErrorKind",
    "ThreadlineError",
    "TransportError",
]
