"""Branch/version projection, navigation controls and deep links."""
from .deeplink import DeepLink, DeepLinkResolver, parse_locator
from .navigator import BranchNavigator, NavigatorView
from .store import BranchProjection, BranchVersionStore, Direction, VersionProjection, next_index

__all__ = [
    "BranchNavigator",
    "BranchProjection",
    "BranchVersionStore",
    "DeepLink",
    "DeepLinkResolver",
    "Direction",
    "NavigatorView",
    "VersionProjection",
    "next_index",
    "parse_locator",
]
