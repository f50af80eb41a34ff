"""
Pytest configuration and shared fixtures for Trade Sync tests.
"""
import pytest

from core.config.settings import (
    LoggingSettings,
    MetaApiSettings,
    Settings,
    StreamSettings,
    SyncSettings,
)
from tests.mocks.fakes import (
    FakeClock,
    FakeConnector,
    FakeMetaApiClient,
    RecordingConsumer,
    StaticTokenProvider,
)


@pytest.fixture
def test_settings():
    """Test settings configuration."""
    return Settings(
        environment="testing",
        logging=LoggingSettings(console_enabled=False, file_enabled=False),
        stream=StreamSettings(url="ws://stream.test/ws", reconnect_delay_seconds=0.01),
        sync=SyncSettings(),
        metaapi=MetaApiSettings(
            base_url="http://metaapi.test",
            account_id="1001",
            access_token="test-token",
        ),
    )


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fake_connector():
    return FakeConnector()


@pytest.fixture
def fake_client():
    return FakeMetaApiClient()


@pytest.fixture
def recording_consumer():
    return RecordingConsumer()


@pytest.fixture
def token_provider():
    return StaticTokenProvider()
