"""Shared fixtures: a fresh store per test and a TestClient bound to it."""

from collections.abc import Callable, Iterator

import pytest
from fastapi.testclient import TestClient

from dietcim.activity import ActivityRecorder
from dietcim.main import app
from dietcim.storage import MemoryStorage, get_storage

# Lowest cost bcrypt accepts; keeps hashing fast in tests.
TEST_BCRYPT_ROUNDS = 4

Headers = dict[str, str]


@pytest.fixture
def storage() -> MemoryStorage:
    """An empty store with the activity recorder attached, as in production."""
    store = MemoryStorage(bcrypt_rounds=TEST_BCRYPT_ROUNDS)
    ActivityRecorder(store).attach()
    return store


@pytest.fixture
def api(storage: MemoryStorage) -> Iterator[TestClient]:
    app.dependency_overrides[get_storage] = lambda: storage
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def register(api: TestClient) -> Callable[..., tuple[dict, Headers]]:
    """Return a helper that registers a dietitian and yields (user, auth headers)."""

    def _register(
        username: str = "dyt_ayse", password: str = "secret-pass"
    ) -> tuple[dict, Headers]:
        resp = api.post(
            "/api/auth/register",
            json={
                "username": username,
                "password": password,
                "email": f"{username}@example.com",
                "full_name": f"Dietitian {username}",
            },
        )
        assert resp.status_code == 201, resp.text
        body = resp.json()
        return body["user"], {"Authorization": f"Bearer {body['token']}"}

    return _register
