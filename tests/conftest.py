import pytest

from observability import metrics
from tests.fixtures import build_harness


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def harness():
    return build_harness()
