"""Adapter registry, built once at startup."""

import logging
from typing import Dict, Iterable, List

from apptsync.config import SyncSettings
from apptsync.errors import UnsupportedOperation
from apptsync.integrations.base import Capability, ProviderAdapter
from apptsync.integrations.google_calendar import GoogleCalendarAdapter
from apptsync.integrations.google_meet import GoogleMeetAdapter
from apptsync.integrations.microsoft_calendar import MicrosoftCalendarAdapter
from apptsync.integrations.zoom import ZoomAdapter
from apptsync.models.integration import Provider

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """Adapters keyed by provider."""

    def __init__(self, adapters: Iterable[ProviderAdapter] = ()):
        self._adapters: Dict[Provider, ProviderAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: ProviderAdapter) -> None:
        self._adapters[Provider(adapter.provider)] = adapter

    def get(self, provider) -> ProviderAdapter:
        try:
            return self._adapters[Provider(provider)]
        except (KeyError, ValueError):
            raise UnsupportedOperation(f"No adapter registered for {provider}")

    def with_capability(self, capability: Capability) -> List[ProviderAdapter]:
        return [a for a in self._adapters.values() if a.supports(capability)]


def build_default_registry(settings: SyncSettings) -> AdapterRegistry:
    """Construct all four adapters from settings.

    An adapter whose OAuth client is not configured is still registered; its
    token calls will fail with AuthExchangeFailed/RefreshFailed.
    """
    timeout = settings.http_timeout_sec
    registry = AdapterRegistry(
        [
            GoogleCalendarAdapter(settings.google, timeout=timeout, calendar_id=settings.default_calendar_id),
            GoogleMeetAdapter(settings.google, timeout=timeout, calendar_id=settings.default_calendar_id),
            MicrosoftCalendarAdapter(settings.microsoft, timeout=timeout, tenant=settings.microsoft_tenant),
            ZoomAdapter(settings.zoom, timeout=timeout, timezone_name=settings.zoom_timezone),
        ]
    )
    for name, client in (("google", settings.google), ("microsoft", settings.microsoft), ("zoom", settings.zoom)):
        if not client.is_configured:
            logger.warning(f"OAuth client for {name} is not fully configured")
    return registry
