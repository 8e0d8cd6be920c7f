import pytest

from fakes import FakePeerConnection
from net.relay import InMemoryRelay
from util import log as event_log
from util import metrics
from util.config import get_config


@pytest.fixture(autouse=True)
def _isolated():
    event_log.set_enabled(False)
    metrics.reset()
    FakePeerConnection.reset()
    get_config.cache_clear()
    yield
    get_config.cache_clear()
    event_log.set_enabled(True)


@pytest.fixture
def relay():
    return InMemoryRelay()
