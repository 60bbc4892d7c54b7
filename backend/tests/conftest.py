"""Shared test fixtures and configuration for backend tests."""
import time

import jwt
import pytest
from fastapi.testclient import TestClient

from roomchat.config import AppConfig, DatabaseSettings, JWTSecrets, Secrets
from roomchat.main import create_app
from roomchat.storage.service import ChatStore

TEST_SECRET = "test-secret"


def make_token(user_id, username=None, secret=TEST_SECRET, expires_in=3600, **claims):
    payload = {"sub": user_id, "exp": int(time.time()) + expires_in, **claims}
    if username is not None:
        payload["username"] = username
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture
def token_for():
    """Return a function minting a valid token for (user_id, username)."""
    return make_token


@pytest.fixture
def auth_headers():
    """Return a function building Bearer headers for a user."""
    def _headers(user_id, username=None):
        return {"Authorization": f"Bearer {make_token(user_id, username)}"}
    return _headers


@pytest.fixture
def test_config():
    """In-memory database and a known JWT secret."""
    return AppConfig(
        database=DatabaseSettings(path=":memory:"),
        secrets=Secrets(jwt=JWTSecrets(secret_key=TEST_SECRET)),
    )


@pytest.fixture
def api_client(test_config):
    """Provide a TestClient with the lifespan running.

    Entering the client context keeps one event loop for every request and
    WebSocket session, so live sessions can see each other.
    """
    with TestClient(create_app(test_config)) as client:
        yield client


@pytest.fixture
def store():
    """A fresh in-memory ChatStore."""
    chat_store = ChatStore(db_path=":memory:")
    yield chat_store
    chat_store.close()
