"""
Student feedback and complaints.

All feedback lives in the `feedback` collection with a nullable bus
reference; bus ratings are feedback entries that carry a rating.
"""
from typing import List, Optional, get_args

from pydantic import ValidationError as PydanticValidationError
from pymongo import ReturnDocument
from pymongo.database import Database

from database import create_document, oid, utcnow
from errors import NotFoundError, ValidationError
from fleet import get_bus
from logging_config import get_logger
from schemas import Complaint, ComplaintStatus, Feedback, FeedbackStatus

logger = get_logger("feedback")

ANONYMOUS_NAME = "Anonymous Student"


def _bus_fields(db: Database, bus_ref: Optional[str]) -> dict:
    if not bus_ref:
        return {}
    bus = get_bus(db, bus_ref)
    return {
        "busId": str(bus["_id"]),
        "busName": bus.get("busName"),
        "busNumber": bus.get("busNumber"),
        "driverId": bus.get("driver"),
        "driverName": bus.get("driverName") or "Unknown Driver",
    }


def _author(student: dict, is_anonymous: bool) -> dict:
    return {
        "studentId": student["id"],
        "studentName": ANONYMOUS_NAME if is_anonymous else (student.get("name") or "Student"),
        "isAnonymous": bool(is_anonymous),
    }


def submit_feedback(db: Database, student: dict, subject: Optional[str], message: Optional[str],
                    bus_ref: Optional[str] = None, rating: Optional[int] = None,
                    is_anonymous: bool = False) -> dict:
    if rating is not None:
        if not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError("Please provide a valid rating between 1 and 5")
        if not bus_ref:
            raise ValidationError("A rating must name a bus")
    elif not subject or not message:
        raise ValidationError("Subject and message are required")

    fields = _bus_fields(db, bus_ref)
    if rating is not None and not subject:
        subject = f"Rating for {fields['busName']}"

    entry = Feedback(
        subject=subject,
        message=message or "",
        rating=rating,
        **_author(student, is_anonymous),
        **fields,
    )
    feedback_id = create_document("feedback", entry, database=db)
    logger.info(f"Feedback {feedback_id} submitted for {entry.busName}")
    return db["feedback"].find_one({"_id": oid(feedback_id)})


def submit_complaint(db: Database, student: dict, subject: Optional[str], message: Optional[str],
                     complaint_type: Optional[str] = None, severity: Optional[int] = None,
                     bus_ref: Optional[str] = None, is_anonymous: bool = False) -> dict:
    if not subject or not message:
        raise ValidationError("Subject and message are required")

    try:
        entry = Complaint(
            subject=subject,
            message=message,
            type=complaint_type or "other",
            severity=severity if severity is not None else 3,
            **_author(student, is_anonymous),
            **_bus_fields(db, bus_ref),
        )
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid complaint: {e.errors()[0]['msg']}")

    complaint_id = create_document("complaint", entry, database=db)
    logger.info(f"Complaint {complaint_id} ({entry.type}, severity {entry.severity}) submitted")
    return db["complaint"].find_one({"_id": oid(complaint_id)})


def list_for_driver(db: Database, driver_id: str) -> List[dict]:
    return list(db["feedback"].find({"driverId": driver_id}).sort("created_at", -1))


def complaints_for_driver(db: Database, driver_id: str) -> List[dict]:
    return list(db["complaint"].find({"driverId": driver_id}).sort("created_at", -1))


def _update_for_driver(db: Database, feedback_id: str, driver_id: str, changes: dict) -> dict:
    changes["updated_at"] = utcnow()
    updated = db["feedback"].find_one_and_update(
        {"_id": oid(feedback_id), "driverId": driver_id},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        # Feedback addressed to another driver looks the same as missing feedback
        raise NotFoundError("Feedback", feedback_id)
    return updated


def driver_mark_read(db: Database, feedback_id: str, driver_id: str) -> dict:
    return _update_for_driver(db, feedback_id, driver_id, {"readByDriver": True})


def driver_respond(db: Database, feedback_id: str, driver_id: str, response: Optional[str]) -> dict:
    if not response or not response.strip():
        raise ValidationError("Response is required")
    updated = _update_for_driver(db, feedback_id, driver_id, {
        "driverResponse": response.strip(),
        "readByDriver": True,
        "status": "responding",
    })
    logger.info(f"Driver {driver_id} responded to feedback {feedback_id}")
    return updated


def inbox(db: Database) -> dict:
    return {
        "feedback": list(db["feedback"].find().sort("created_at", -1)),
        "complaints": list(db["complaint"].find().sort("created_at", -1)),
    }


def _admin_update(db: Database, collection: str, item_id: str, changes: dict) -> dict:
    changes["updated_at"] = utcnow()
    updated = db[collection].find_one_and_update(
        {"_id": oid(item_id)},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise NotFoundError(collection.capitalize(), item_id)
    return updated


def admin_mark_read(db: Database, collection: str, item_id: str) -> dict:
    return _admin_update(db, collection, item_id, {"readByAdmin": True})


def update_feedback_status(db: Database, feedback_id: str, status: Optional[str],
                           response: Optional[str] = None) -> dict:
    if status not in get_args(FeedbackStatus):
        raise ValidationError(f"Invalid feedback status: {status}")
    changes = {"status": status, "readByAdmin": True}
    if response:
        changes["adminResponse"] = response
    return _admin_update(db, "feedback", feedback_id, changes)


def update_complaint_status(db: Database, complaint_id: str, status: Optional[str],
                            response: Optional[str] = None, action_taken: Optional[str] = None) -> dict:
    if status not in get_args(ComplaintStatus):
        raise ValidationError(f"Invalid complaint status: {status}")
    changes = {
        "status": status,
        "readByAdmin": True,
        "resolvedAt": utcnow() if status in ("resolved", "closed") else None,
    }
    if response:
        changes["adminResponse"] = response
    if action_taken:
        changes["adminActionTaken"] = action_taken
    updated = _admin_update(db, "complaint", complaint_id, changes)
    logger.info(f"Complaint {complaint_id} moved to {status}")
    return updated
