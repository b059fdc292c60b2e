"""
Provider client registry

Holds provider adapters per (channel, clinic). The registry is created once
per process by the entry point and passed to the executor; adapters are
built lazily on first use and dropped when credentials rotate.
"""
import logging
import threading
from typing import Any, Callable, Dict, Optional, Tuple

from config.settings import Settings
from followup.provider_adapter import (
    ConfigurationError,
    HttpCallProviderAdapter,
    ProviderAdapter,
    SmtpEmailProviderAdapter,
)
from scheduling.models import Channel

logger = logging.getLogger("provider-registry")

RegistryKey = Tuple[Channel, Optional[str]]
AdapterFactory = Callable[[Channel, Dict[str, Any]], ProviderAdapter]


def default_adapter_factory(channel: Channel, credentials: Dict[str, Any]) -> ProviderAdapter:
    """Build the production adapter for a channel from its credentials"""
    if channel == Channel.CALL:
        return HttpCallProviderAdapter(
            base_url=credentials["base_url"],
            api_key=credentials.get("api_key"),
            timeout_seconds=credentials.get("timeout_seconds", 15.0),
        )
    return SmtpEmailProviderAdapter(
        host=credentials["host"],
        port=credentials["port"],
        username=credentials.get("username"),
        password=credentials.get("password"),
        timeout_seconds=credentials.get("timeout_seconds", 15.0),
    )


def credentials_from_settings(settings: Settings) -> Dict[Channel, Dict[str, Any]]:
    return {
        Channel.CALL: {
            "base_url": settings.call_provider_base_url,
            "api_key": settings.call_provider_api_key,
            "timeout_seconds": settings.provider_timeout_seconds,
        },
        Channel.EMAIL: {
            "host": settings.smtp_host,
            "port": settings.smtp_port,
            "username": settings.smtp_username,
            "password": settings.smtp_password,
            "timeout_seconds": settings.provider_timeout_seconds,
        },
    }


class ProviderClientRegistry:
    """Lazily built, explicitly evicted provider adapters"""

    def __init__(
        self,
        default_credentials: Dict[Channel, Dict[str, Any]],
        factory: AdapterFactory = default_adapter_factory
    ):
        """
        Args:
            default_credentials: Per-channel credentials used when a clinic has
                no override
            factory: Builds an adapter from (channel, credentials)
        """
        self._lock = threading.Lock()
        self._default_credentials = dict(default_credentials)
        self._overrides: Dict[RegistryKey, Dict[str, Any]] = {}
        self._clients: Dict[RegistryKey, ProviderAdapter] = {}
        self._factory = factory

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderClientRegistry":
        return cls(credentials_from_settings(settings))

    @classmethod
    def with_adapters(cls, adapters: Dict[Channel, ProviderAdapter]) -> "ProviderClientRegistry":
        """Registry that always hands out the given adapters (tests, local runs)"""
        registry = cls({channel: {} for channel in adapters}, factory=lambda channel, _: adapters[channel])
        return registry

    def get(self, channel: Channel, clinic_id: Optional[str] = None) -> ProviderAdapter:
        """
        Return the adapter for a channel and clinic, building it on first use

        Raises:
            ConfigurationError: If no credentials exist or they are incomplete
        """
        key = (channel, clinic_id)
        with self._lock:
            client = self._clients.get(key)
            if client is not None:
                return client

            credentials = self._overrides.get(key)
            if credentials is None:
                credentials = self._default_credentials.get(channel)
            if credentials is None:
                raise ConfigurationError(f"No {channel.value} provider credentials configured")

            client = self._factory(channel, credentials)
            self._clients[key] = client
            logger.info(f"Created {channel.value} provider client for clinic {clinic_id or 'default'}")
            return client

    def rotate_credentials(
        self,
        channel: Channel,
        credentials: Dict[str, Any],
        clinic_id: Optional[str] = None
    ):
        """Install new credentials and drop any client built from the old ones"""
        key = (channel, clinic_id)
        with self._lock:
            if clinic_id is None:
                self._default_credentials[channel] = dict(credentials)
                # Clinics without an override were built from the defaults
                stale = [k for k in self._clients if k[0] == channel and k not in self._overrides]
            else:
                self._overrides[key] = dict(credentials)
                stale = [key]
            for stale_key in stale:
                self._clients.pop(stale_key, None)
        logger.info(f"Rotated {channel.value} credentials for clinic {clinic_id or 'default'}")

    def evict(self, channel: Channel, clinic_id: Optional[str] = None) -> bool:
        with self._lock:
            return self._clients.pop((channel, clinic_id), None) is not None

    def clear(self):
        with self._lock:
            self._clients.clear()

    def __len__(self):
        with self._lock:
            return len(self._clients)
