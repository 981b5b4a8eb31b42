"""Unit test fixtures."""
import logging

import pytest

from fakes import FakeCluster


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def logger():
    return logging.getLogger("rollout_engine.tests")
