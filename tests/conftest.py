import pytest

from support import build_engine


@pytest.fixture
def harness():
    return build_engine()


@pytest.fixture
def engine(harness):
    return harness[0]


@pytest.fixture
def store(harness):
    return harness[1]


@pytest.fixture
def gateway(harness):
    return harness[2]
