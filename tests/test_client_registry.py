"""
Tests for the provider client registry
"""
import pytest
from unittest.mock import Mock

from config.settings import Settings
from followup.client_registry import ProviderClientRegistry, default_adapter_factory
from followup.provider_adapter import (
    ConfigurationError,
    HttpCallProviderAdapter,
    MockProviderAdapter,
    SmtpEmailProviderAdapter,
)
from scheduling.models import Channel


def _counting_factory():
    factory = Mock(side_effect=lambda channel, credentials: MockProviderAdapter())
    return factory


class TestProviderClientRegistry:
    """Tests for lazy creation, rotation and eviction"""

    def test_client_built_once_per_key(self):
        factory = _counting_factory()
        registry = ProviderClientRegistry({Channel.CALL: {"api_key": "k"}}, factory=factory)

        first = registry.get(Channel.CALL)
        second = registry.get(Channel.CALL)

        assert first is second
        assert factory.call_count == 1
        assert len(registry) == 1

    def test_clinics_get_separate_clients(self):
        factory = _counting_factory()
        registry = ProviderClientRegistry({Channel.CALL: {"api_key": "k"}}, factory=factory)

        assert registry.get(Channel.CALL, "clinic-1") is not registry.get(Channel.CALL, "clinic-2")
        assert factory.call_count == 2

    def test_missing_channel_credentials(self):
        registry = ProviderClientRegistry({Channel.CALL: {}}, factory=_counting_factory())
        with pytest.raises(ConfigurationError):
            registry.get(Channel.EMAIL)

    def test_clinic_override_rotation(self):
        factory = _counting_factory()
        registry = ProviderClientRegistry({Channel.CALL: {"api_key": "default"}}, factory=factory)
        default_client = registry.get(Channel.CALL)
        old_clinic_client = registry.get(Channel.CALL, "clinic-1")

        registry.rotate_credentials(Channel.CALL, {"api_key": "clinic-key"}, clinic_id="clinic-1")
        new_clinic_client = registry.get(Channel.CALL, "clinic-1")

        assert new_clinic_client is not old_clinic_client
        assert registry.get(Channel.CALL) is default_client
        assert factory.call_args[0][1] == {"api_key": "clinic-key"}

    def test_default_rotation_drops_dependent_clients(self):
        factory = _counting_factory()
        registry = ProviderClientRegistry({Channel.CALL: {"api_key": "v1"}}, factory=factory)
        registry.rotate_credentials(Channel.CALL, {"api_key": "own"}, clinic_id="clinic-2")
        default_client = registry.get(Channel.CALL, "clinic-1")
        override_client = registry.get(Channel.CALL, "clinic-2")

        registry.rotate_credentials(Channel.CALL, {"api_key": "v2"})

        assert registry.get(Channel.CALL, "clinic-1") is not default_client
        assert registry.get(Channel.CALL, "clinic-2") is override_client

    def test_evict_and_clear(self):
        registry = ProviderClientRegistry({Channel.CALL: {}}, factory=_counting_factory())
        registry.get(Channel.CALL)

        assert registry.evict(Channel.CALL) is True
        assert registry.evict(Channel.CALL) is False

        registry.get(Channel.CALL, "clinic-1")
        registry.clear()
        assert len(registry) == 0

    def test_with_adapters(self):
        adapter = MockProviderAdapter()
        registry = ProviderClientRegistry.with_adapters({Channel.CALL: adapter})
        assert registry.get(Channel.CALL, "any-clinic") is adapter


class TestDefaultFactory:
    """Tests for building production adapters from settings"""

    def test_from_settings_builds_real_adapters(self):
        settings = Settings(
            call_provider_api_key="key",
            smtp_username="clinic@example.com",
            smtp_password="secret",
        )
        registry = ProviderClientRegistry.from_settings(settings)

        assert isinstance(registry.get(Channel.CALL), HttpCallProviderAdapter)
        assert isinstance(registry.get(Channel.EMAIL), SmtpEmailProviderAdapter)

    def test_missing_api_key_is_configuration_error(self):
        registry = ProviderClientRegistry.from_settings(Settings())
        with pytest.raises(ConfigurationError):
            registry.get(Channel.CALL)

    def test_missing_smtp_credentials(self):
        with pytest.raises(ConfigurationError):
            default_adapter_factory(Channel.EMAIL, {"host": "smtp", "port": 587})
