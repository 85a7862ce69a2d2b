from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient

from mapbackend.api import create_app
from mapbackend.config.settings import Settings
from mapbackend.security.auth import Role, TokenService
from mapbackend.security.rate_limit import FixedWindowRateLimiter
from mapbackend.tests.fakes import FakeStore

JWT_SECRET = "test-signing-secret-0123456789-abcdefghij"


def make_settings(**overrides) -> Settings:
    values = dict(
        supabase_url="https://store.test",
        supabase_anon_key="anon-key",
        supabase_service_role_key="service-key",
        jwt_secret=JWT_SECRET,
        app_control_enabled=False,
        log_requests=False,
    )
    values.update(overrides)
    return Settings(**values)


def seed_tables() -> dict:
    return {
        "addresses": [
            {"id": 1, "name": "Kafe Merkez", "city": "Ankara", "main_category_id": 1},
            {"id": 2, "name": "Eczane Deniz", "city": "Izmir", "main_category_id": 2},
            {"id": 3, "name": "Kafe Sahil", "city": "Izmir", "main_category_id": 1},
        ],
        "main_categories": [
            {"id": 1, "name": "Kafe"},
            {"id": 2, "name": "Eczane"},
        ],
        "sub_categories": [{"id": 1, "main_category_id": 1, "name": "Nargile"}],
        "users": [
            {
                "id": 7,
                "username": "root",
                "password": "$2b$04$notarealhashnotarealhashnotarealhashnotarealhashnot",
                "role": "admin",
                "full_name": "Root Admin",
            }
        ],
        "logs": [{"id": 1, "message": "boot"}],
        "api_keys": [{"id": 1, "name": "maps"}],
    }


@pytest.fixture
def store() -> FakeStore:
    return FakeStore(seed_tables())


@pytest.fixture
def tokens() -> TokenService:
    return TokenService(JWT_SECRET)


@pytest.fixture
def auth(tokens):
    def _headers(role: Role | str = Role.ADMIN, username: str = "root", user_id: str = "7"):
        return {"Authorization": f"Bearer {tokens.issue(user_id, username, role)}"}

    return _headers


@pytest.fixture
def limiter() -> FixedWindowRateLimiter:
    # frozen clock: every request of a test lands in the same window
    now = time.time()
    return FixedWindowRateLimiter(clock=lambda: now)


@pytest.fixture
def app(store, limiter):
    return create_app(settings=make_settings(), clients=store.clients(), rate_limiter=limiter)


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)
