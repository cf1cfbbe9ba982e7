"""API-specific test fixtures."""

import httpx
import pytest
from fastapi import FastAPI

from app.api.deps import get_processor
from app.core.auth import ClerkUser, require_auth


def override_auth(user: ClerkUser):
    """Dependency override factory for require_auth."""

    async def _override():
        return user

    return _override


@pytest.fixture
def test_user() -> ClerkUser:
    return ClerkUser(user_id="u1", claims={"sub": "u1", "email": "u1@example.com"})


@pytest.fixture
def app(engine, processor, test_user) -> FastAPI:
    """Full application wired to the SQLite engine and the fake processor.

    The engine fixture sets the global session factory, so route
    dependencies using get_session_factory() hit the test database.
    """
    from app.main import create_app

    application = create_app()
    application.dependency_overrides[require_auth] = override_auth(test_user)
    application.dependency_overrides[get_processor] = lambda: processor
    yield application
    application.dependency_overrides.clear()


@pytest.fixture
async def client(app: FastAPI):
    """In-process AsyncClient sharing the pytest-asyncio event loop with the engine."""
    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
