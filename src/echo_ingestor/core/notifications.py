"""User-facing notifications for terminal pipeline events, shown only when unfocused."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Protocol

from echo_ingestor.config.settings import EchoIngestorSettings
from echo_ingestor.core.models import EventCategory, NotificationPermission

logger = logging.getLogger(__name__)


class NotificationContext(Protocol):
    """Platform capability the gateway queries. Never assumed, always injected."""

    @property
    def supported(self) -> bool: ...

    @property
    def permission(self) -> NotificationPermission: ...

    @property
    def document_hidden(self) -> bool: ...

    async def request_permission(self) -> NotificationPermission: ...

    def show(self, title: str, body: str, tag: str) -> None: ...


class NotificationGateway:
    """Emit completion/error notifications when the user is looking elsewhere.

    Each event category has a fixed tag. The tag is passed to the platform so
    that a newer notification replaces an older one, and a repeat of the same
    tag within `dedupe_seconds` is dropped here.
    """

    def __init__(
        self,
        context: NotificationContext,
        *,
        dedupe_seconds: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._context = context
        self._dedupe_seconds = dedupe_seconds
        self._clock = clock
        self._last_shown: dict[str, float] = {}

    @classmethod
    def from_settings(
        cls,
        context: NotificationContext,
        settings: EchoIngestorSettings,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> NotificationGateway:
        return cls(context, dedupe_seconds=settings.notification_dedupe_seconds, clock=clock)

    @property
    def enabled(self) -> bool:
        return (
            self._context.supported
            and self._context.permission is NotificationPermission.GRANTED
        )

    async def request_permission(self) -> bool:
        """Ask for permission if it has not been decided yet. Returns True if granted."""
        if not self._context.supported:
            return False

        permission = self._context.permission
        if permission is NotificationPermission.GRANTED:
            return True
        if permission is NotificationPermission.DENIED:
            return False

        try:
            permission = await self._context.request_permission()
        except Exception as e:
            logger.warning("Failed to request notification permission: %s", e)
            return False
        return permission is NotificationPermission.GRANTED

    def notify_if_hidden(
        self,
        title: str,
        body: str,
        category: EventCategory = EventCategory.COMPLETION,
    ) -> bool:
        """Show a notification if supported, permitted, and the document is hidden.

        Returns:
            True if a notification was shown.
        """
        if not self.enabled or not self._context.document_hidden:
            return False

        tag = category.tag
        now = self._clock()
        last = self._last_shown.get(tag)
        if last is not None and now - last < self._dedupe_seconds:
            logger.debug("Suppressed duplicate %s notification", tag)
            return False

        try:
            self._context.show(title, body, tag)
        except Exception as e:
            logger.warning("Failed to show notification: %s", e)
            return False

        self._last_shown[tag] = now
        return True

    def notify_completion(
        self,
        title: str = "Content Ready!",
        body: str = "Your content has been processed and is ready to view.",
    ) -> bool:
        return self.notify_if_hidden(title, body, EventCategory.COMPLETION)

    def notify_error(
        self,
        title: str = "Processing Failed",
        body: str = "There was an error processing your content. Please try again.",
    ) -> bool:
        return self.notify_if_hidden(title, body, EventCategory.ERROR)
