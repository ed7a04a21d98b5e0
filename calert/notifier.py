"""Routes batches of alerts to the provider configured for a room."""

from __future__ import annotations

import logging
from typing import Iterable, Sequence

from .alerts import Alert, Provider

log = logging.getLogger(__name__)


class UnknownRoomError(LookupError):
    """No provider is configured for the requested room."""

    def __init__(self, room: str) -> None:
        super().__init__(f"no provider configured for room: {room}")
        self.room = room


class Notifier:
    """Pushes alerts to upstream providers, keyed by room name."""

    def __init__(self, providers: Iterable[Provider]) -> None:
        self._providers: dict[str, Provider] = {
            provider.room(): provider for provider in providers
        }

    @property
    def rooms(self) -> list[str]:
        """Names of the rooms that have a provider."""
        return list(self._providers)

    def dispatch(self, alerts: Sequence[Alert], room: str) -> None:
        """Push ``alerts`` to the provider for ``room``."""
        log.info("dispatching alerts count=%d", len(alerts))
        provider = self._providers.get(room)
        if provider is None:
            log.error("no provider available for room room=%s", room)
            raise UnknownRoomError(room)
        provider.push(alerts)