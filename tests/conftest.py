import fakeredis
import pytest
from fastapi.testclient import TestClient

from app import create_app
from backend import RoomRegistry


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def registry(redis_client):
    return RoomRegistry(redis_client)


@pytest.fixture
def client(registry):
    with TestClient(create_app(registry)) as client:
        yield client
