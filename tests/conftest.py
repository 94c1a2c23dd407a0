import mongomock
import pytest
from fastapi.testclient import TestClient
from jose import jwt

import main
from auth import ALGORITHM, SECRET_KEY
from database import ensure_indexes, get_db
from models import users

TOUR = {
    "name": "The Forest Hiker",
    "duration": 5,
    "max_group_size": 25,
    "difficulty": "easy",
    "price": 397,
    "summary": "Breathtaking hike through the Canadian Banff National Park",
    "image_cover": "tour-1-cover.jpg",
}

# bcrypt-shaped placeholder, users made through add_user skip hashing
FAKE_HASH = "$2b$12$" + "a" * 53


def tour_payload(**overrides):
    return {**TOUR, **overrides}


def add_user(db, name="Laura Wilson", email=None, role="user", active=True):
    email = email or f"{name.split()[0].lower()}@natours.io"
    doc = users.validate_document({"name": name, "email": email, "role": role, "password": FAKE_HASH, "active": active})
    return users.create(db, doc)


def token_for(user):
    return jwt.encode({"sub": str(user["_id"])}, SECRET_KEY, algorithm=ALGORITHM)


def auth_header(user):
    return {"Authorization": f"Bearer {token_for(user)}"}


@pytest.fixture
def db():
    database = mongomock.MongoClient().get_database("tours_test")
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    main.app.dependency_overrides[get_db] = lambda: db
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()
