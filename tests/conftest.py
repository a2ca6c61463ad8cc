import pytest
from prometheus_client import CollectorRegistry

from tests.fakes import StaticCredentials


@pytest.fixture()
def registry() -> "CollectorRegistry":
    """
    fresh Prometheus registry to avoid cross-test state.
    """
    return CollectorRegistry()


@pytest.fixture()
def no_credentials() -> "StaticCredentials":
    return StaticCredentials()
