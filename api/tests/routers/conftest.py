import pytest
from fastapi.testclient import TestClient

from kost.core.deps import get_gateway
from kost.main import app


@pytest.fixture
def client(gateway):
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def owner(gateway):
    return gateway.add_user()


@pytest.fixture
def prop(gateway, owner):
    return gateway.add_property(owner["id"], "Kost Melati")


@pytest.fixture
def auth(owner, token_for):
    return {"Authorization": f"Bearer {token_for(owner['id'])}"}
