"""
Bus fleet administration, live location and the per-bus activity log.
"""
from typing import List, Optional

from pydantic import ValidationError as PydanticValidationError
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from config import settings
from database import bus_filter, oid, utcnow
from errors import ConflictError, NotFoundError, ValidationError
from logging_config import get_logger
from schemas import Bus, User
from security import get_password_hash, verify_password

logger = get_logger("fleet")

DRIVER_EMAIL_DOMAIN = "campus.edu"

WEEKDAYS = ["Mon", "Tue", "Wed", "Thu", "Fri"]

DEFAULT_SCHEDULE = [
    {"time": "7:45 AM", "departure": "Bus Depot", "arrival": "Campus", "days": WEEKDAYS},
    {"time": "8:15 AM", "departure": "Campus", "arrival": "City Center", "days": WEEKDAYS},
    {"time": "1:00 PM", "departure": "City Center", "arrival": "Campus", "days": WEEKDAYS},
    {"time": "4:30 PM", "departure": "Campus", "arrival": "Bus Depot", "days": WEEKDAYS},
]

REQUIRED_BUS_FIELDS = ("busName", "busId", "busNumber", "plateNumber", "driverName", "route", "capacity", "pin")

UPDATABLE_BUS_FIELDS = ("busName", "busNumber", "plateNumber", "driverName", "route", "capacity",
                        "currentLocation", "notes", "isActive")


def activity_entry(action: str, details: str) -> dict:
    return {"action": action, "details": details, "timestamp": utcnow()}


def _push_activity(action: str, details: str) -> dict:
    """$push clause that prepends an activity and trims the log in the same write"""
    return {
        "recentActivity": {
            "$each": [activity_entry(action, details)],
            "$position": 0,
            "$slice": settings.RECENT_ACTIVITY_LIMIT,
        }
    }


def get_bus(db: Database, bus_ref: str) -> dict:
    bus = db["bus"].find_one(bus_filter(bus_ref)) if bus_ref else None
    if not bus:
        raise NotFoundError("Bus", bus_ref)
    return bus


def list_buses(db: Database, active_only: bool = False) -> List[dict]:
    query = {"isActive": True} if active_only else {}
    return list(db["bus"].find(query).sort("created_at", -1))


def find_bus_for_driver(db: Database, driver_id: str) -> Optional[dict]:
    return db["bus"].find_one({"driver": driver_id})


def _driver_email(bus_id: str) -> str:
    return f"{bus_id.lower()}@{DRIVER_EMAIL_DOMAIN}"


def _create_driver_user(db: Database, bus_id: str, driver_name: str, hashed_pin: str) -> str:
    user = User(
        name=driver_name,
        email=_driver_email(bus_id),
        password=hashed_pin,
        role="driver",
        isVerified=True,
    )
    doc = user.model_dump()
    doc["created_at"] = utcnow()
    try:
        return str(db["user"].insert_one(doc).inserted_id)
    except DuplicateKeyError:
        raise ConflictError(f"A driver account for {bus_id} already exists")


def add_bus(db: Database, data: dict, schedule: Optional[List[dict]] = None) -> dict:
    missing = [f for f in REQUIRED_BUS_FIELDS if data.get(f) in (None, "")]
    if missing:
        raise ValidationError("Please fill in all required fields")
    if data["pin"] != data.get("confirmPin"):
        raise ValidationError("PINs do not match")
    try:
        capacity = int(data["capacity"])
    except (TypeError, ValueError):
        raise ValidationError("Capacity must be a number")
    if capacity < 1:
        raise ValidationError("Capacity must be at least 1")
    if db["bus"].find_one({"busId": data["busId"]}):
        raise ConflictError("Bus ID already exists. Please choose a different ID")

    hashed_pin = get_password_hash(str(data["pin"]))
    try:
        bus = Bus(
            busName=data["busName"],
            busId=data["busId"],
            busNumber=data["busNumber"],
            plateNumber=data["plateNumber"],
            driverName=data["driverName"],
            driver=data.get("driver"),
            route=data["route"],
            capacity=capacity,
            pin=hashed_pin,
            currentLocation=data.get("currentLocation") or "Not specified",
            notes=data.get("notes") or "",
            isActive=bool(data.get("isActive", True)),
            schedule=schedule if schedule is not None else DEFAULT_SCHEDULE,
            recentActivity=[activity_entry("Bus Added", "Bus was added to the system")],
        )
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid bus: {e.errors()[0]['msg']}")

    # Driver account last, so a rejected bus leaves no user behind
    created_driver = None
    if not bus.driver:
        bus.driver = created_driver = _create_driver_user(db, bus.busId, bus.driverName, hashed_pin)

    doc = bus.model_dump()
    doc["created_at"] = utcnow()
    try:
        inserted = db["bus"].insert_one(doc)
    except DuplicateKeyError:
        if created_driver:
            db["user"].delete_one({"_id": oid(created_driver)})
        raise ConflictError("Bus ID already exists. Please choose a different ID")
    logger.info(f"Bus {bus.busId} added on route {bus.route}")
    return db["bus"].find_one({"_id": inserted.inserted_id})


def update_bus(db: Database, bus_ref: str, data: dict) -> dict:
    bus = get_bus(db, bus_ref)
    changes = {k: data[k] for k in UPDATABLE_BUS_FIELDS if data.get(k) not in (None, "")}
    if "capacity" in changes:
        changes["capacity"] = int(changes["capacity"])
        if changes["capacity"] < 1:
            raise ValidationError("Capacity must be at least 1")

    if data.get("newPin"):
        if not verify_password(data.get("currentPin"), bus.get("pin")):
            raise ValidationError("Current PIN is incorrect")
        if data["newPin"] != data.get("confirmNewPin"):
            raise ValidationError("New PINs do not match")
        changes["pin"] = get_password_hash(str(data["newPin"]))

    changes["updated_at"] = utcnow()
    updated = db["bus"].find_one_and_update(
        {"_id": bus["_id"]},
        {"$set": changes, "$push": _push_activity("Bus Updated", "Bus information was updated by management")},
        return_document=ReturnDocument.AFTER,
    )
    logger.info(f"Bus {bus['busId']} updated: {sorted(k for k in changes if k not in ('pin', 'updated_at'))}")
    return updated


def delete_bus(db: Database, bus_ref: str) -> None:
    """Delete a bus and the driver account that was created for it"""
    bus = get_bus(db, bus_ref)
    db["bus"].delete_one({"_id": bus["_id"]})
    if bus.get("driver"):
        db["user"].delete_one({
            "_id": oid(bus["driver"]),
            "role": "driver",
            "email": _driver_email(bus["busId"]),
        })
    logger.info(f"Bus {bus['busId']} deleted")


def _point(name: Optional[str], lat: Optional[float], lon: Optional[float], default_name: str) -> dict:
    return {"name": name or default_name, "lat": float(lat), "lon": float(lon)}


def update_location(db: Database, bus_ref: str,
                    current_lat: Optional[float] = None, current_lon: Optional[float] = None,
                    boarding_lat: Optional[float] = None, boarding_lon: Optional[float] = None,
                    boarding_name: Optional[str] = None,
                    destination_lat: Optional[float] = None, destination_lon: Optional[float] = None,
                    destination_name: Optional[str] = None) -> dict:
    bus = get_bus(db, bus_ref)
    changes = {}
    update = {}

    if current_lat is not None and current_lon is not None:
        changes["currentCoordinates"] = {"lat": float(current_lat), "lon": float(current_lon), "lastUpdated": utcnow()}
        changes["currentLocation"] = "Updated via map"
        update["$push"] = _push_activity(
            "Location Updated",
            f"Current location updated to coordinates ({current_lat}, {current_lon})",
        )
    if boarding_lat is not None and boarding_lon is not None:
        changes["boardingPoint"] = _point(boarding_name, boarding_lat, boarding_lon, "Boarding Point")
    if destination_lat is not None and destination_lon is not None:
        changes["destinationPoint"] = _point(destination_name, destination_lat, destination_lon, "Destination")

    if not changes:
        raise ValidationError("No location data provided")

    update["$set"] = changes
    updated = db["bus"].find_one_and_update({"_id": bus["_id"]}, update, return_document=ReturnDocument.AFTER)
    logger.info(f"Location updated for bus {bus['busId']}")
    return updated


def bus_location(bus: dict) -> dict:
    coordinates = bus.get("currentCoordinates") or {}
    return {
        "id": str(bus["_id"]),
        "busId": bus.get("busId"),
        "busName": bus.get("busName"),
        "busNumber": bus.get("busNumber"),
        "route": bus.get("route"),
        "isActive": bus.get("isActive", True),
        "currentLocation": bus.get("currentLocation"),
        "coordinates": coordinates,
        "boardingPoint": bus.get("boardingPoint"),
        "destinationPoint": bus.get("destinationPoint"),
        "lastUpdated": coordinates.get("lastUpdated"),
    }


def all_bus_locations(db: Database) -> List[dict]:
    return [bus_location(b) for b in list_buses(db, active_only=True)]


def assign_bus(db: Database, student_id: str, bus_ref: str) -> dict:
    if not student_id or not bus_ref:
        raise ValidationError("Student ID and Bus ID are required")
    bus = get_bus(db, bus_ref)
    student = db["user"].find_one_and_update(
        {"_id": oid(student_id), "role": "student"},
        {"$set": {"assignedBus": str(bus["_id"]), "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not student:
        raise NotFoundError("Student", student_id)
    logger.info(f"Student {student_id} assigned to bus {bus['busId']}")
    return student


SEED_BUSES = [
    {"busName": "8th Block Express", "busId": "KBUS001", "busNumber": "TN67AB1001", "driverName": "Rajesh Kumar",
     "route": "8th Block → Ladies Hostel", "capacity": 50, "pin": "1111", "currentLocation": "8th Block",
     "schedule": [("07:30 AM", "8th Block", "Ladies Hostel"), ("06:00 PM", "Ladies Hostel", "8th Block")]},
    {"busName": "Boys Hostel Shuttle", "busId": "KBUS002", "busNumber": "TN67AB1002", "driverName": "Suresh Reddy",
     "route": "Boys Hostel → Main Gate", "capacity": 45, "pin": "2222", "currentLocation": "Boys Hostel",
     "schedule": [("08:00 AM", "Boys Hostel", "Main Gate"), ("05:30 PM", "Main Gate", "Boys Hostel")]},
    {"busName": "Main Gate Express", "busId": "KBUS003", "busNumber": "TN67AB1003", "driverName": "Kumar Swami",
     "route": "Main Gate → Hostel", "capacity": 50, "pin": "3333", "currentLocation": "Main Gate",
     "schedule": [("08:15 AM", "Main Gate", "Hostel Complex"), ("05:45 PM", "Hostel Complex", "Main Gate")]},
    {"busName": "Ladies Hostel Express", "busId": "KBUS004", "busNumber": "TN67AB1004", "driverName": "Priya Devi",
     "route": "Ladies Hostel → 8th Block", "capacity": 45, "pin": "4444", "currentLocation": "Ladies Hostel",
     "schedule": [("07:45 AM", "Ladies Hostel", "8th Block"), ("06:15 PM", "8th Block", "Ladies Hostel")]},
    {"busName": "VIP Express Madurai", "busId": "KBUS005", "busNumber": "TN67AB1005", "driverName": "Venkatesh Iyer",
     "route": "Madurai → Campus", "capacity": 35, "pin": "5555", "currentLocation": "Madurai",
     "schedule": [("06:30 AM", "Madurai Central", "Campus"), ("07:00 PM", "Campus", "Madurai Central")]},
    {"busName": "VIP Express University", "busId": "KBUS006", "busNumber": "TN67AB1006", "driverName": "Arjun Patel",
     "route": "Campus → Madurai", "capacity": 35, "pin": "6666", "currentLocation": "Campus",
     "schedule": [("06:45 AM", "Campus", "Madurai Central"), ("07:15 PM", "Madurai Central", "Campus")]},
]


def seed_fleet(db: Database) -> int:
    """Insert the demo fleet with one driver account per bus; no-op once buses exist"""
    if db["bus"].count_documents({}) > 0:
        return 0
    for entry in SEED_BUSES:
        data = {k: v for k, v in entry.items() if k != "schedule"}
        data["plateNumber"] = data["busNumber"]
        data["confirmPin"] = data["pin"]
        schedule = [{"time": t, "departure": d, "arrival": a, "days": WEEKDAYS} for t, d, a in entry["schedule"]]
        add_bus(db, data, schedule=schedule)
    logger.info(f"Seeded {len(SEED_BUSES)} buses")
    return len(SEED_BUSES)
