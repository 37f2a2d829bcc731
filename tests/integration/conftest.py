"""HTTP-level fixtures: the FastAPI app wired to the test engine"""
import pytest
from fastapi.testclient import TestClient

from ticketflow.api.deps import get_engine_dep
from ticketflow.main import create_app


@pytest.fixture
def client(engine, users):
    # No context manager: the lifespan (indexes, scheduler) stays off in tests
    app = create_app()
    app.dependency_overrides[get_engine_dep] = lambda: engine
    return TestClient(app)


@pytest.fixture
def as_user():
    def headers(user_id: str):
        return {"X-User-Id": user_id, "X-Correlation-Id": f"test-{user_id}"}
    return headers
