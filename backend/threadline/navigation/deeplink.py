"""
Deep-link resolution: drive a navigator to the state addressed by an external locator.

Accepted locators::

    /chat/<chatId>/message/<messageId>[/branch/<branchId>]
    ?message=<messageId>[&branch=<branchId>]
    #message=<messageId>[:<branchId>]
"""
import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import parse_qs, urlsplit

from ..errors import NavigationError, NavigationErrorKind
from .navigator import BranchNavigator

logger = logging.getLogger(__name__)

PATH_RE = re.compile(
    r"^/chat/(?P<chat>[\w-]+)/message/(?P<message>[\w-]+)(?:/branch/(?P<branch>[\w-]+))?/?$"
)


@dataclass(frozen=True)
class DeepLink:
    message_id: str
    branch_id: Optional[str] = None
    chat_id: Optional[str] = None


def parse_locator(locator: str) -> Optional[DeepLink]:
    """Parse a locator; None if it addresses no message."""
    parts = urlsplit(locator.strip())

    match = PATH_RE.match(parts.path)
    if match:
        return DeepLink(
            message_id=match.group("message"),
            branch_id=match.group("branch"),
            chat_id=match.group("chat")
        )

    query = parse_qs(parts.query)
    if query.get("message"):
        branch = query.get("branch", [None])[0]
        return DeepLink(message_id=query["message"][0], branch_id=branch or None)

    fragment = parse_qs(parts.fragment)
    if fragment.get("message"):
        message_id, _, branch = fragment["message"][0].partition(":")
        if message_id:
            return DeepLink(message_id=message_id, branch_id=branch or None)

    return None


class DeepLinkResolver:
    """Resolves locators through navigators obtained from navigator_for(message_id)."""

    def __init__(self, navigator_for: Callable[[str], BranchNavigator]) -> None:
        self.navigator_for = navigator_for

    async def resolve(self, locator: str) -> Optional[DeepLink]:
        link = parse_locator(locator)
        if link is None:
            logger.debug("No message addressed by %r", locator)
            return None

        navigator = self.navigator_for(link.message_id)
        await navigator.store.refresh(link.message_id)
        if link.branch_id is None:
            return link

        projection = navigator.store.branches_for(link.message_id)
        index = projection.index_of(link.branch_id)
        if index < 0:
            raise NavigationError(
                NavigationErrorKind.TARGET_NOT_FOUND,
                f"Branch {link.branch_id} not found on message {link.message_id}"
            )
        if index != projection.active_index:
            if not await navigator.switch_to_branch(link.branch_id):
                raise NavigationError(
                    NavigationErrorKind.TARGET_NOT_FOUND,
                    f"Could not switch message {link.message_id} to branch {link.branch_id}"
                )
            await navigator.store.refresh(link.message_id)
        logger.info("Resolved %r to message %s branch %s", locator, link.message_id, link.branch_id)
        return link
