"""
Pytest configuration and fixtures for discharge follow-up scheduling tests
"""
import pytest
import redis
from datetime import datetime, timezone
from unittest.mock import Mock

from config.settings import Settings
from followup.call_executor import FollowupExecutor
from followup.client_registry import ProviderClientRegistry
from followup.provider_adapter import MockProviderAdapter
from followup.status_tracker import StatusTracker
from scheduling.dispatch import MockDispatchGateway
from scheduling.models import CaseSnapshot, Channel, ClinicInfo, SchedulingConfig
from scheduling.runtime import assemble_runtime
from scheduling.scheduler import AutoScheduler
from scheduling.store import InMemorySchedulingStore
from test_utils import AssertionHelpers, ScheduledItemBuilder


@pytest.fixture
def mock_redis():
    """Mock Redis client for testing"""
    return Mock(spec=redis.Redis)


@pytest.fixture
def store():
    """Empty in-memory scheduling store"""
    return InMemorySchedulingStore()


@pytest.fixture
def dispatch():
    """Dispatch gateway that records messages instead of delivering them"""
    return MockDispatchGateway()


@pytest.fixture
def clinic(store):
    """Clinic on UTC so expected send times read directly"""
    clinic = ClinicInfo(id="clinic-1", name="Happy Paws", phone="+15555550100", timezone="UTC")
    store.save_clinic(clinic)
    return clinic


@pytest.fixture
def enabled_config(store, clinic):
    """Enabled config with default delays (email +1d 10:00, call +2d 16:00)"""
    config = SchedulingConfig(clinic_id=clinic.id, enabled=True)
    store.save_config(config)
    return config


@pytest.fixture
def make_case(store, clinic):
    """Factory for eligible cases; keyword arguments override any field"""
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        fields = dict(
            id=f"case-{counter['n']}",
            clinic_id=clinic.id,
            status="completed",
            created_at=datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc),
            user_id="vet-1",
            owner_name="Jane Owner",
            owner_phone="+1 (555) 555-0123",
            owner_email="jane@example.com",
            patient_name="Biscuit",
            has_discharge_summary=True,
            discharge_summary="Dental cleaning, soft food for two days.",
        )
        fields.update(overrides)
        case = CaseSnapshot(**fields)
        store.save_case(case)
        return case

    return _make


@pytest.fixture
def scheduler(store, dispatch):
    """AutoScheduler on the in-memory store and mock dispatch"""
    return AutoScheduler(store, dispatch, default_timezone="UTC")


@pytest.fixture
def call_adapter():
    """Call provider that accepts calls asynchronously"""
    return MockProviderAdapter()


@pytest.fixture
def email_adapter():
    """Email provider that delivers synchronously, like SMTP"""
    return MockProviderAdapter(delivered=True)


@pytest.fixture
def registry(call_adapter, email_adapter):
    return ProviderClientRegistry.with_adapters({
        Channel.CALL: call_adapter,
        Channel.EMAIL: email_adapter,
    })


@pytest.fixture
def executor(store, registry, dispatch):
    return FollowupExecutor(store, registry, dispatch)


@pytest.fixture
def tracker(store, executor):
    return StatusTracker(store, executor.outcomes)


@pytest.fixture
def runtime(store, dispatch, registry):
    """Fully wired runtime on in-memory infrastructure"""
    return assemble_runtime(Settings(default_clinic_timezone="UTC"), store, dispatch, registry)


@pytest.fixture
def redis_test_db():
    """
    Real Redis connection for integration tests.
    Uses database 15 to avoid conflicts with development data.
    """
    try:
        client = redis.Redis(host='localhost', port=6379, db=15, decode_responses=True)
        client.ping()  # Test connection

        # Clear the test database before each test
        client.flushdb()

        yield client

        # Clean up after test
        client.flushdb()
        client.close()

    except redis.ConnectionError:
        pytest.skip("Redis not available for integration tests")


@pytest.fixture
def item_builder():
    """Fixture providing a ScheduledItemBuilder"""
    return ScheduledItemBuilder()


@pytest.fixture
def assert_helpers():
    """Fixture providing AssertionHelpers"""
    return AssertionHelpers
