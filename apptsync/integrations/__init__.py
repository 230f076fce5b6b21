"""Provider adapters for apptsync."""

from apptsync.integrations.base import Capability, ProviderAdapter
from apptsync.integrations.registry import AdapterRegistry, build_default_registry
