"""
Passenger roster: the accepted requests of a bus, read fresh on every call.
There is no roster collection.
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel
from pymongo.database import Database

from bus_requests import ACCEPTED, COLLECTION, populate
from fleet import get_bus


class Passenger(BaseModel):
    requestId: str
    name: str
    studentId: str
    boardingStop: str
    destination: str
    acceptedAt: Optional[datetime] = None


def _accepted_filter(bus: dict) -> dict:
    return {"bus": str(bus["_id"]), "status": ACCEPTED}


def list_passengers(db: Database, bus_ref: str) -> List[Passenger]:
    bus = get_bus(db, bus_ref)
    requests = list(db[COLLECTION].find(_accepted_filter(bus)).sort([("boardingStop", 1), ("responseTime", 1)]))
    passengers = []
    for r in populate(db, requests):
        student = r["studentInfo"] or {}
        passengers.append(Passenger(
            requestId=str(r["_id"]),
            name=student.get("name") or "Unknown",
            studentId=student.get("studentId") or "N/A",
            boardingStop=r["boardingStop"],
            destination=r.get("destination") or "",
            acceptedAt=r.get("responseTime"),
        ))
    return passengers


def count_passengers(db: Database, bus_ref: str) -> int:
    bus = get_bus(db, bus_ref)
    return db[COLLECTION].count_documents(_accepted_filter(bus))
