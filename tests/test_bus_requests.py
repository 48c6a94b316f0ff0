import threading
from concurrent.futures import ThreadPoolExecutor

import mongomock
import pytest
from pymongo.errors import DuplicateKeyError

import bus_requests
from errors import AuthorizationError, ConflictError, NotFoundError, StateError, ValidationError


def _create(db, student, bus, stop="Gate 2", destination="Main Campus"):
    return bus_requests.create_request(db, student["id"], bus["busId"], stop, destination)


def test_create_request_is_pending_and_copies_driver(db, alice, bus):
    request = _create(db, alice, bus)

    assert request["status"] == "pending"
    assert request["student"] == alice["id"]
    assert request["bus"] == str(bus["_id"])
    assert request["driver"] == bus["driver"]
    assert request["boardingStop"] == "Gate 2"
    assert request["requestTime"] is not None
    assert request["responseTime"] is None

    student = db["user"].find_one({"studentId": "S001"})
    assert str(request["_id"]) in student["busRequests"]


@pytest.mark.parametrize("bus_ref,stop,destination", [
    (None, "Gate 2", "Main Campus"),
    ("B1", "", "Main Campus"),
    ("B1", "Gate 2", "   "),
])
def test_create_request_requires_all_fields(db, alice, bus, bus_ref, stop, destination):
    with pytest.raises(ValidationError):
        bus_requests.create_request(db, alice["id"], bus_ref, stop, destination)
    assert db["busrequest"].count_documents({}) == 0


def test_create_request_unknown_bus(db, alice, bus):
    with pytest.raises(NotFoundError):
        bus_requests.create_request(db, alice["id"], "NOPE", "Gate 2", "Main Campus")


def test_second_pending_request_conflicts(db, alice, bus):
    _create(db, alice, bus)

    with pytest.raises(ConflictError):
        _create(db, alice, bus, stop="Gate 5")

    assert db["busrequest"].count_documents({"student": alice["id"], "status": "pending"}) == 1


def test_bus_id_and_document_id_are_the_same_bus(db, alice, bus):
    _create(db, alice, bus)

    with pytest.raises(ConflictError):
        bus_requests.create_request(db, alice["id"], str(bus["_id"]), "Gate 2", "Main Campus")


def test_pending_requests_for_different_buses_or_students_coexist(db, alice, bob, bus, other_bus):
    _create(db, alice, bus)
    _create(db, alice, other_bus)
    _create(db, bob, bus)

    assert db["busrequest"].count_documents({"status": "pending"}) == 3


def test_new_request_allowed_after_rejection(db, alice, bus):
    first = _create(db, alice, bus)
    bus_requests.reject_request(db, str(first["_id"]), bus["driver"])

    second = _create(db, alice, bus)

    assert second["_id"] != first["_id"]
    assert second["status"] == "pending"


def test_unique_index_rejects_a_second_pending_document(db, alice, bus):
    _create(db, alice, bus)

    with pytest.raises(DuplicateKeyError):
        db["busrequest"].insert_one({"student": alice["id"], "bus": str(bus["_id"]), "status": "pending"})


def test_lost_insert_race_surfaces_as_conflict(db, alice, bus, monkeypatch):
    def racing_update_one(self, *args, **kwargs):
        raise DuplicateKeyError("E11000 duplicate key error")

    monkeypatch.setattr(mongomock.collection.Collection, "update_one", racing_update_one)

    with pytest.raises(ConflictError):
        _create(db, alice, bus)


def test_accept_sets_status_and_response_time(db, alice, bus):
    request = _create(db, alice, bus)

    accepted = bus_requests.accept_request(db, str(request["_id"]), bus["driver"])

    assert accepted["status"] == "accepted"
    assert accepted["responseTime"] is not None


def test_accept_twice_is_a_state_error_and_changes_nothing(db, alice, bus):
    request = _create(db, alice, bus)
    accepted = bus_requests.accept_request(db, str(request["_id"]), bus["driver"])

    with pytest.raises(StateError):
        bus_requests.accept_request(db, str(request["_id"]), bus["driver"])

    stored = db["busrequest"].find_one({"_id": request["_id"]})
    assert stored["status"] == "accepted"
    assert stored["responseTime"] == accepted["responseTime"]


def test_reject_after_accept_is_a_state_error(db, alice, bus):
    request = _create(db, alice, bus)
    bus_requests.accept_request(db, str(request["_id"]), bus["driver"])

    with pytest.raises(StateError):
        bus_requests.reject_request(db, str(request["_id"]), bus["driver"])


@pytest.mark.parametrize("transition", [bus_requests.accept_request, bus_requests.reject_request])
def test_other_driver_cannot_decide(db, alice, bus, other_bus, transition):
    request = _create(db, alice, bus)

    with pytest.raises(AuthorizationError):
        transition(db, str(request["_id"]), other_bus["driver"])

    assert db["busrequest"].find_one({"_id": request["_id"]})["status"] == "pending"


@pytest.mark.parametrize("request_id", ["not-an-id", "64b7f0c2a1b2c3d4e5f60718"])
def test_accept_missing_request(db, bus, request_id):
    with pytest.raises(NotFoundError):
        bus_requests.accept_request(db, request_id, bus["driver"])


def test_reject_sets_status(db, alice, bus):
    request = _create(db, alice, bus)

    rejected = bus_requests.reject_request(db, str(request["_id"]), bus["driver"])

    assert rejected["status"] == "rejected"
    assert rejected["responseTime"] is not None


def test_cancel_removes_request_and_detaches_it(db, alice, bus):
    request = _create(db, alice, bus)

    bus_requests.cancel_request(db, str(request["_id"]), alice["id"])

    assert db["busrequest"].find_one({"_id": request["_id"]}) is None
    assert bus_requests.list_for_student(db, alice["id"]) == []
    assert bus_requests.list_pending_for_driver(db, bus["driver"]) == []
    assert db["user"].find_one({"studentId": "S001"})["busRequests"] == []


def test_cancel_by_another_student_is_refused(db, alice, bob, bus):
    request = _create(db, alice, bus)

    with pytest.raises(AuthorizationError):
        bus_requests.cancel_request(db, str(request["_id"]), bob["id"])

    assert db["busrequest"].find_one({"_id": request["_id"]})["status"] == "pending"


def test_cancel_accepted_request_is_a_state_error(db, alice, bus):
    request = _create(db, alice, bus)
    bus_requests.accept_request(db, str(request["_id"]), bus["driver"])

    with pytest.raises(StateError):
        bus_requests.cancel_request(db, str(request["_id"]), alice["id"])

    assert db["busrequest"].find_one({"_id": request["_id"]})["status"] == "accepted"


def test_board_accepted_request(db, alice, bus):
    request = _create(db, alice, bus)
    bus_requests.accept_request(db, str(request["_id"]), bus["driver"])

    boarded = bus_requests.board_request(db, str(request["_id"]))

    assert boarded["status"] == "boarded"
    assert boarded["boardedTime"] is not None


def test_board_requires_accepted(db, alice, bus):
    request = _create(db, alice, bus)

    with pytest.raises(StateError):
        bus_requests.board_request(db, str(request["_id"]), bus["driver"])


def test_boarded_is_terminal(db, alice, bus):
    request = _create(db, alice, bus)
    request_id = str(request["_id"])
    bus_requests.accept_request(db, request_id, bus["driver"])
    bus_requests.board_request(db, request_id, bus["driver"])

    for transition in (bus_requests.accept_request, bus_requests.reject_request, bus_requests.board_request):
        with pytest.raises(StateError):
            transition(db, request_id, bus["driver"])


def test_driver_listing_shows_only_own_pending_requests(db, alice, bob, bus, other_bus):
    mine = _create(db, alice, bus)
    decided = _create(db, bob, bus)
    bus_requests.reject_request(db, str(decided["_id"]), bus["driver"])
    _create(db, bob, other_bus)

    pending = bus_requests.list_pending_for_driver(db, bus["driver"])

    assert [r["_id"] for r in pending] == [mine["_id"]]
    assert pending[0]["studentInfo"]["name"] == "alice"
    assert pending[0]["busInfo"]["busId"] == "B1"


def test_concurrent_creates_yield_one_request(db, alice, bus):
    barrier = threading.Barrier(2)

    def submit(stop):
        barrier.wait()
        try:
            return _create(db, alice, bus, stop=stop)
        except ConflictError as e:
            return e

    with ThreadPoolExecutor(max_workers=2) as pool:
        outcomes = list(pool.map(submit, ["Gate 2", "Gate 5"]))

    assert sum(isinstance(o, ConflictError) for o in outcomes) == 1
    assert sum(isinstance(o, dict) for o in outcomes) == 1
    assert db["busrequest"].count_documents({"student": alice["id"], "status": "pending"}) == 1
