"""API test fixtures: service singletons patched behind the HTTP layer.

Builds on root conftest fixtures (api_client, mock_db, identity_headers,
mock_external_services). Route handlers are exercised end to end through
FastAPI; the services they call are autospec mocks so each test controls
the domain outcome.
"""

from __future__ import annotations

from unittest.mock import patch

import pytest


@pytest.fixture
def lifecycle():
    """The subscription lifecycle service as seen by the subscription routes."""
    with patch("billing.api.v1.subscriptions.subscription_lifecycle", autospec=True) as service:
        yield service


@pytest.fixture
def usage():
    """The usage service as seen by the internal routes."""
    with patch("billing.api.v1.internal.usage_service", autospec=True) as service:
        yield service


@pytest.fixture
def service_token() -> str:
    return "internal-test-token"


@pytest.fixture
def service_headers(service_token: str):
    """X-Service-Token header with the configured secret patched in."""
    with patch("billing.api.deps.settings") as settings:
        settings.internal_service_token = service_token
        yield {"X-Service-Token": service_token}
