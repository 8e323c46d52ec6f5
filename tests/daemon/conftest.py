"""
Fixtures for the daemon API tests.

The app is used without its lifespan: the services fixture (built on the
Jamf Pro and Title Editor fakes) is injected through dependency overrides.
"""

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient

from xolod.dependencies import ADMIN_HEADER
from xolod.dependencies import get_services
from xolod.main import app
from xolod.services.container import XoloServices


@pytest.fixture
def client(services: XoloServices) -> Generator[TestClient, None, None]:
    """Create FastAPI test client wired to the test services."""
    app.dependency_overrides[get_services] = lambda: services
    app.state.shutting_down = False
    yield TestClient(app, headers={ADMIN_HEADER: "tester"})
    app.dependency_overrides.clear()
    app.state.shutting_down = False
