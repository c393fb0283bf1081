"""API-specific test fixtures."""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from capability_factory.api.deps import get_orchestrator
from capability_factory.main import app as factory_app


@pytest.fixture
def api_client(orchestrator):
    """TestClient over the real app with the orchestrator dependency swapped for the draft-mode fixture.

    The client is not entered as a context manager, so the lifespan (database,
    background worker) never runs.
    """
    app: FastAPI = factory_app
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def idea_payload(idea_details):
    return {
        "org_id": "acme",
        "sandbox_id": "sandbox-1",
        "product_id": "widgets",
        "title": "Lead scoring",
        "description": "Rank inbound leads",
        "details": idea_details,
        "actor": "alice",
    }
