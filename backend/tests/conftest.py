import pytest

from owl.activity import ActivityBroadcaster
from owl.config import OwlSettings
from owl.sandbox.manager import SandboxManager
from tests.fakes import FakeEnvironment


@pytest.fixture
def settings() -> OwlSettings:
    return OwlSettings(
        lifetime_budget_seconds=3600.0,
        keepalive_interval_seconds=300.0,
        probe_timeout_seconds=1.0,
        probe_grace_seconds=0.0,
        create_timeout_seconds=5.0,
        command_timeout_seconds=5.0,
        destroy_timeout_seconds=1.0,
        max_rounds=5,
        api_key="test-key",
    )


@pytest.fixture
def environment() -> FakeEnvironment:
    return FakeEnvironment()


@pytest.fixture
def broadcaster() -> ActivityBroadcaster:
    return ActivityBroadcaster(history_limit=100)


@pytest.fixture
async def manager(environment, broadcaster, settings):
    manager = SandboxManager(environment, broadcaster, settings)
    yield manager
    await manager.shutdown()
