from __future__ import annotations

import pytest

from nexusrelay.registry import Registry

# Import fixtures from testing/ so they are known by pytest
# and can be used with
from testing.rendezvous_server import rendezvous_server
from testing.utils import FakeClock


@pytest.fixture()
def clock() -> FakeClock:
    """Fixture that provides a manually advanced clock."""
    return FakeClock()


@pytest.fixture()
def registry(clock: FakeClock) -> Registry:
    """Fixture that provides an empty registry using the fake clock."""
    return Registry(clock=clock)
