import time
from typing import Any, Dict, List, Tuple

import pytest

from chatrelay.core.auth import encode_token
from chatrelay.core.store import MessageStore

SECRET = "test-secret"


class FakeConnection:
    """Records posted events instead of writing to a socket."""

    def __init__(self, name: str = "conn", accept: bool = True) -> None:
        self.name = name
        self.accept = accept
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    def post(self, event: str, data: Dict[str, Any]) -> bool:
        if not self.accept:
            return False
        self.events.append((event, data))
        return True

    def of(self, event: str) -> List[Dict[str, Any]]:
        return [data for name, data in self.events if name == event]


@pytest.fixture
def secret():
    return SECRET


@pytest.fixture
def make_token(secret):
    def _make(identity="u1", ttl=3600, **extra):
        claims = {"id": identity, "iat": int(time.time()), **extra}
        if ttl is not None:
            claims["exp"] = int(time.time()) + ttl
        return encode_token(claims, secret)
    return _make


@pytest.fixture
def store_path(tmp_path):
    return tmp_path / "data" / "chat.json"


@pytest.fixture
def store(store_path):
    return MessageStore(store_path)


@pytest.fixture
def fake_connection():
    return FakeConnection
