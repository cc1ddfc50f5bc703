from __future__ import annotations

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Ensure repo root is on sys.path so `import progression` works under pytest.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from progression.api import dependencies  # noqa: E402
from progression.main import app  # noqa: E402
from progression.repos.progression_store import (  # noqa: E402
    InMemoryProgressionStore,
    seed_sample_catalog,
)
from progression.services import token_service  # noqa: E402
from progression.services.cache import cache_service  # noqa: E402

# Seeded catalogue (see seed_sample_catalog):
#   course  linux-fundamentals
#   module  linux-basics       lessons linux-basics-1, linux-basics-2 (10 XP each)
#                              lab     linux-basics-lab (20 XP), module reward 100
#   module  linux-permissions  prerequisite linux-basics
#                              lesson  linux-permissions-1 (15 XP), reward 150


@pytest.fixture(autouse=True)
def store() -> InMemoryProgressionStore:
    """Fresh seeded in-memory store, shared by the API and service tests."""
    fresh = InMemoryProgressionStore()
    seed_sample_catalog(fresh)
    dependencies.memory_store = fresh
    return fresh


@pytest.fixture(autouse=True)
def reset_cache() -> None:
    """Clear cached leaderboards between tests."""
    if hasattr(cache_service, "_store"):
        cache_service._store.clear()  # type: ignore[union-attr]


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


def mint_token(
    username: str = "test-user",
    roles: list[str] | None = None,
) -> str:
    """Create a valid ES256 JWT for testing."""
    return token_service.create_access_token(sub=username, roles=roles)


def auth(username: str = "test-user", roles: list[str] | None = None) -> dict:
    return {"Authorization": f"Bearer {mint_token(username, roles)}"}


@pytest.fixture
def token() -> str:
    """Token with default role (user)."""
    return mint_token()


@pytest.fixture
def admin_token() -> str:
    """Token with admin role."""
    return mint_token(username="test-admin", roles=["admin"])
