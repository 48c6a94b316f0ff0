"""
Bus request lifecycle.

    pending  -> accepted | rejected | cancelled
    accepted -> boarded

Every transition is a single conditional write filtered on the expected
prior status (and the acting user), so concurrent actors cannot both win.
When the write matches nothing the current document is re-read only to
pick the right error.
"""
from typing import Dict, Iterable, List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import oid, utcnow
from errors import AuthorizationError, ConflictError, NotFoundError, StateError, ValidationError
from fleet import get_bus
from logging_config import get_logger
from schemas import BusRequest

logger = get_logger("bus_requests")

COLLECTION = "busrequest"

PENDING = "pending"
ACCEPTED = "accepted"
REJECTED = "rejected"
BOARDED = "boarded"
CANCELLED = "cancelled"


def _blank(value) -> bool:
    return value is None or not str(value).strip()


def get_request(db: Database, request_id: str) -> dict:
    object_id = oid(request_id)
    doc = db[COLLECTION].find_one({"_id": object_id}) if object_id else None
    if not doc:
        raise NotFoundError("Request", request_id)
    return doc


def create_request(db: Database, student_id: str, bus_ref: str, boarding_stop: str, destination: str) -> dict:
    if _blank(bus_ref) or _blank(boarding_stop) or _blank(destination):
        raise ValidationError("Please provide all required fields")

    bus = get_bus(db, bus_ref)

    bus_id = str(bus["_id"])
    now = utcnow()
    request = BusRequest(
        student=student_id,
        bus=bus_id,
        driver=bus.get("driver"),
        boardingStop=boarding_stop.strip(),
        destination=destination.strip(),
        requestTime=now,
    ).model_dump()
    key = {k: request.pop(k) for k in ("student", "bus", "status")}
    request["created_at"] = request["updated_at"] = now
    try:
        # Inserts only when no pending request matches the key
        result = db[COLLECTION].update_one(key, {"$setOnInsert": request}, upsert=True)
        upserted_id = result.upserted_id
    except DuplicateKeyError:
        upserted_id = None

    if upserted_id is None:
        logger.warning(f"Duplicate pending request from student {student_id} for bus {bus_id}")
        raise ConflictError("You already have a pending request for this bus")

    db["user"].update_one({"_id": oid(student_id)}, {"$addToSet": {"busRequests": str(upserted_id)}})
    logger.info(f"Bus request {upserted_id} created by student {student_id} for bus {bus.get('busId', bus_id)}")
    return db[COLLECTION].find_one({"_id": upserted_id})


def _explain_failure(db: Database, request_id: str, target: str, actor_field: Optional[str],
                     actor_id: Optional[str], verb: str):
    current = get_request(db, request_id)
    if actor_id is not None and current.get(actor_field) != actor_id:
        logger.warning(f"{actor_field} {actor_id} tried to {verb} request {request_id} it does not own")
        raise AuthorizationError(f"Not authorized to {verb} this request")
    status = current.get("status")
    logger.warning(f"Request {request_id} cannot go from {status} to {target}")
    if target == BOARDED:
        raise StateError("Only accepted requests can be boarded", current_status=status)
    raise StateError(f"Only pending requests can be {target}", current_status=status)


def _transition(db: Database, request_id: str, expected: str, target: str, stamp_field: str,
                actor_field: Optional[str], actor_id: Optional[str], verb: str) -> dict:
    object_id = oid(request_id)
    updated = None
    if object_id is not None:
        query = {"_id": object_id, "status": expected}
        if actor_id is not None:
            query[actor_field] = actor_id
        now = utcnow()
        updated = db[COLLECTION].find_one_and_update(
            query,
            {"$set": {"status": target, stamp_field: now, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
    if updated is None:
        _explain_failure(db, request_id, target, actor_field, actor_id, verb)
    logger.info(f"Request {request_id}: {expected} -> {target}")
    return updated


def accept_request(db: Database, request_id: str, driver_id: str) -> dict:
    return _transition(db, request_id, PENDING, ACCEPTED, "responseTime", "driver", driver_id, "accept")


def reject_request(db: Database, request_id: str, driver_id: str) -> dict:
    return _transition(db, request_id, PENDING, REJECTED, "responseTime", "driver", driver_id, "reject")


def board_request(db: Database, request_id: str, driver_id: Optional[str] = None) -> dict:
    """Mark an accepted passenger as on board. Drivers call this explicitly;
    nothing boards a passenger automatically."""
    return _transition(db, request_id, ACCEPTED, BOARDED, "boardedTime", "driver", driver_id, "board")


def cancel_request(db: Database, request_id: str, student_id: str) -> None:
    object_id = oid(request_id)
    deleted = 0
    if object_id is not None:
        deleted = db[COLLECTION].delete_one(
            {"_id": object_id, "student": student_id, "status": PENDING}
        ).deleted_count
    if not deleted:
        _explain_failure(db, request_id, CANCELLED, "student", student_id, "cancel")

    db["user"].update_one({"_id": oid(student_id)}, {"$pull": {"busRequests": str(object_id)}})
    logger.info(f"Request {request_id} cancelled by student {student_id}")


def _lookup(db: Database, collection: str, ids: Iterable[str], fields: dict) -> Dict[str, dict]:
    object_ids = [x for x in (oid(i) for i in set(ids)) if x is not None]
    if not object_ids:
        return {}
    return {str(d["_id"]): d for d in db[collection].find({"_id": {"$in": object_ids}}, fields)}


def populate(db: Database, requests: List[dict]) -> List[dict]:
    """Attach student and bus summaries the way the dashboards show them"""
    students = _lookup(db, "user", (r["student"] for r in requests),
                       {"name": 1, "email": 1, "studentId": 1, "department": 1})
    buses = _lookup(db, "bus", (r["bus"] for r in requests), {"busName": 1, "busNumber": 1, "busId": 1})
    for r in requests:
        student = students.get(r["student"])
        bus = buses.get(r["bus"])
        r["studentInfo"] = {k: v for k, v in student.items() if k != "_id"} if student else None
        r["busInfo"] = {k: v for k, v in bus.items() if k != "_id"} if bus else None
    return requests


def list_pending_for_driver(db: Database, driver_id: str) -> List[dict]:
    requests = list(db[COLLECTION].find({"driver": driver_id, "status": PENDING}).sort("requestTime", -1))
    return populate(db, requests)


def list_for_student(db: Database, student_id: str) -> List[dict]:
    requests = list(db[COLLECTION].find({"student": student_id}).sort("requestTime", -1))
    return populate(db, requests)
