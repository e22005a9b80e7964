import os
from pathlib import Path

os.environ.setdefault("ENVIRONMENT", "test")

import mongomock
import pytest
from fastapi.testclient import TestClient

from database import USERS, create_unique_indexes, get_db
from security import create_access_token, hash_password


def pytest_collection_modifyitems(config, items):
    """Mark tests by module: store/HTTP tests are integration, the rest unit."""
    for item in items:
        name = Path(item.fspath).name
        if name in ("test_api.py", "test_factory.py", "test_ratings.py"):
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)


@pytest.fixture()
def database():
    client = mongomock.MongoClient()
    db = client["natours_test"]
    create_unique_indexes(db)
    yield db
    client.drop_database("natours_test")


@pytest.fixture()
def client(database):
    from main import app

    app.dependency_overrides[get_db] = lambda: database
    yield TestClient(app)
    app.dependency_overrides.clear()


def tour_body(**overrides):
    body = {
        "name": "The Forest Hiker",
        "duration": 5,
        "maxGroupSize": 25,
        "difficulty": "easy",
        "price": 397,
        "summary": "Breathtaking hike through the Canadian Banff National Park",
        "imageCover": "tour-1-cover.jpg",
        "startLocation": {"type": "Point", "coordinates": [-116.214531, 51.417611], "address": "Banff, CAN"},
    }
    body.update(overrides)
    return body


@pytest.fixture()
def make_user(database):
    """Insert a user with the given role and return (user, auth headers)."""
    counter = {"n": 0}

    def _make(role="user", name=None, password="pass1234"):
        counter["n"] += 1
        doc = {
            "name": name or f"{role.title()} Number {counter['n']}",
            "email": f"{role}{counter['n']}@example.com",
            "role": role,
            "password": hash_password(password),
            "active": True,
        }
        doc["_id"] = database[USERS].insert_one(doc).inserted_id
        token = create_access_token(str(doc["_id"]))
        return doc, {"Authorization": f"Bearer {token}"}

    return _make


@pytest.fixture()
def make_tour(database):
    from factory import create_one
    from resources import TOUR

    def _make(**overrides):
        return create_one(database, TOUR, tour_body(**overrides))

    return _make
