"""
Campus Bus - Test Configuration and Fixtures
"""
import os

# No real MongoDB in tests; every route gets an in-memory database instead
os.environ['DATABASE_URL'] = ''
os.environ['SECRET_KEY'] = 'test-secret-key-for-testing-only'
os.environ['ENVIRONMENT'] = 'testing'

import mongomock
import pytest
from fastapi.testclient import TestClient

import fleet
from database import ensure_indexes, get_db
from main import app
from notifications import broadcaster
from security import create_access_token


def make_bus_data(bus_id: str, pin: str = "1234", **overrides) -> dict:
    data = {
        "busName": f"{bus_id} Express",
        "busId": bus_id,
        "busNumber": f"TN67{bus_id}",
        "plateNumber": f"TN67{bus_id}",
        "driverName": f"Driver {bus_id}",
        "route": "Main Gate → Hostel",
        "capacity": 40,
        "pin": pin,
        "confirmPin": pin,
    }
    data.update(overrides)
    return data


def bearer(sub: str, role: str, **claims) -> dict:
    token = create_access_token({"sub": sub, "role": role, **claims})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def db():
    database = mongomock.MongoClient()["campus_bus_test"]
    ensure_indexes(database)
    return database


@pytest.fixture(autouse=True)
def reset_broadcaster():
    for members in broadcaster.groups.values():
        members.clear()
    yield
    for members in broadcaster.groups.values():
        members.clear()


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def bus(db) -> dict:
    return fleet.add_bus(db, make_bus_data("B1"))


@pytest.fixture
def other_bus(db) -> dict:
    return fleet.add_bus(db, make_bus_data("B2", pin="5678"))


def _student(db, name: str, student_id: str) -> dict:
    result = db["user"].insert_one({
        "name": name,
        "email": f"{name}@campus.edu",
        "role": "student",
        "studentId": student_id,
        "department": "CSE",
        "busRequests": [],
    })
    return {"id": str(result.inserted_id), "role": "student", "name": name, "studentId": student_id}


@pytest.fixture
def alice(db) -> dict:
    return _student(db, "alice", "S001")


@pytest.fixture
def bob(db) -> dict:
    return _student(db, "bob", "S002")


@pytest.fixture
def alice_headers(alice) -> dict:
    return bearer(alice["id"], "student", name=alice["name"])


@pytest.fixture
def bob_headers(bob) -> dict:
    return bearer(bob["id"], "student", name=bob["name"])


@pytest.fixture
def driver_headers(bus) -> dict:
    return bearer(bus["driver"], "driver", busId=bus["busId"])


@pytest.fixture
def other_driver_headers(other_bus) -> dict:
    return bearer(other_bus["driver"], "driver", busId=other_bus["busId"])


@pytest.fixture
def admin_headers() -> dict:
    return bearer("admin@campus.edu", "management", name="Admin")
