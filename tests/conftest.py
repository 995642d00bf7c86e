"""Shared fixtures."""

import pytest

from bff_aggregator.schemas.catalog import Catalog
from tests.support import ManualClock, UpstreamStub, make_catalog


@pytest.fixture
def stub() -> UpstreamStub:
    return UpstreamStub()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def catalog() -> Catalog:
    return make_catalog()
