import os
import secrets
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Depends, Request, status, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from pydantic import BaseModel, EmailStr
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError
from starlette.websockets import WebSocketState

import bus_requests
import database
import feedback as feedback_service
import fleet
import roster
from config import settings
from database import get_db, get_documents, serialize_doc, utcnow
from errors import AuthenticationError, AuthorizationError, CampusBusError, ConflictError, NotFoundError
from logging_config import setup_logging
from notifications import broadcaster
from schemas import User as UserSchema
from security import (
    create_access_token,
    decode_token,
    get_current_user,
    get_password_hash,
    require_driver,
    require_management,
    require_student,
    verify_password,
)

logger = setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.APP_NAME} ({settings.ENVIRONMENT})")
    if database.db is not None:
        # An unreachable database is fatal at startup
        database.check_connection()
        database.ensure_indexes(database.db)
    yield
    logger.info(f"Shutting down {settings.APP_NAME}")


# FastAPI app
app = FastAPI(title=settings.APP_NAME, version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CampusBusError)
async def campus_bus_error_handler(request: Request, exc: CampusBusError):
    logger.warning(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(status_code=500, content={"success": False, "message": "Server error"})


# Helpers
class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    role: str


def issue_token(sub: str, role: str, **claims) -> Token:
    return Token(access_token=create_access_token({"sub": sub, "role": role, **claims}), role=role)


# Root
@app.get("/")
def read_root():
    return {"message": "Campus Bus Backend Running"}


# Auth routes
class StudentSignup(BaseModel):
    name: str
    email: EmailStr
    password: str
    studentId: str
    department: str


@app.post("/auth/signup/student", response_model=Token)
def signup_student(body: StudentSignup, db: Database = Depends(get_db)):
    email = body.email.lower()
    if db["user"].find_one({"email": email}):
        raise ConflictError("Email already registered")
    user = UserSchema(
        name=body.name,
        email=email,
        password=get_password_hash(body.password),
        role="student",
        studentId=body.studentId,
        department=body.department,
    )
    user_dict = user.model_dump()
    user_dict["created_at"] = utcnow()
    try:
        user_id = str(db["user"].insert_one(user_dict).inserted_id)
    except DuplicateKeyError:
        raise ConflictError("Email already registered")
    logger.info(f"Student {email} signed up")
    return issue_token(user_id, "student", name=body.name)


@app.post("/auth/login/student", response_model=Token)
def login_student(form_data: OAuth2PasswordRequestForm = Depends(), db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": form_data.username.lower(), "role": "student"})
    if not user or not verify_password(form_data.password, user.get("password", "")):
        logger.warning(f"Failed student login for {form_data.username}")
        raise AuthenticationError("Invalid email or password")
    return issue_token(str(user["_id"]), "student", name=user.get("name"))


class DriverLogin(BaseModel):
    busId: str
    pin: str


@app.post("/auth/login/driver", response_model=Token)
def login_driver(body: DriverLogin, db: Database = Depends(get_db)):
    bus = db["bus"].find_one({"busId": body.busId})
    if not bus or not bus.get("driver") or not verify_password(body.pin, bus.get("pin", "")):
        logger.warning(f"Failed driver login for bus {body.busId}")
        raise AuthenticationError("Invalid Bus ID or PIN")
    return issue_token(bus["driver"], "driver", busId=bus["busId"], name=bus.get("driverName"))


class ManagementLogin(BaseModel):
    email: str
    password: str


@app.post("/auth/login/management", response_model=Token)
def login_management(body: ManagementLogin):
    email_ok = secrets.compare_digest(body.email, settings.ADMIN_EMAIL)
    password_ok = secrets.compare_digest(body.password, settings.ADMIN_PASSWORD)
    if not (email_ok and password_ok):
        logger.warning("Failed management login")
        raise AuthenticationError("Invalid email or password")
    return issue_token(settings.ADMIN_EMAIL, "management", name="Admin")


@app.get("/auth/me")
def me(current_user: dict = Depends(get_current_user)):
    return current_user


# Bus requests
class BusRequestCreate(BaseModel):
    busId: Optional[str] = None
    boardingStop: Optional[str] = None
    destination: Optional[str] = None


@app.post("/api/bus-requests/request")
async def create_bus_request(body: BusRequestCreate, student: dict = Depends(require_student),
                             db: Database = Depends(get_db)):
    request = bus_requests.create_request(db, student["id"], body.busId, body.boardingStop, body.destination)
    payload = serialize_doc(request)
    await broadcaster.bus_request_received({**payload, "studentName": student.get("name")})
    return {"success": True, "message": "Bus request submitted successfully", "request": payload}


@app.get("/api/bus-requests/driver/requests")
def driver_pending_requests(driver: dict = Depends(require_driver), db: Database = Depends(get_db)):
    requests = bus_requests.list_pending_for_driver(db, driver["id"])
    return {"success": True, "requests": [serialize_doc(r) for r in requests]}


@app.get("/api/bus-requests/mine")
def my_bus_requests(student: dict = Depends(require_student), db: Database = Depends(get_db)):
    requests = bus_requests.list_for_student(db, student["id"])
    return {"success": True, "requests": [serialize_doc(r) for r in requests]}


@app.post("/api/bus-requests/{request_id}/accept")
def accept_bus_request(request_id: str, driver: dict = Depends(require_driver), db: Database = Depends(get_db)):
    request = bus_requests.accept_request(db, request_id, driver["id"])
    return {"success": True, "message": "Request accepted", "request": serialize_doc(request)}


@app.post("/api/bus-requests/{request_id}/reject")
def reject_bus_request(request_id: str, driver: dict = Depends(require_driver), db: Database = Depends(get_db)):
    request = bus_requests.reject_request(db, request_id, driver["id"])
    return {"success": True, "message": "Request rejected", "request": serialize_doc(request)}


@app.post("/api/bus-requests/{request_id}/board")
def board_bus_request(request_id: str, driver: dict = Depends(require_driver), db: Database = Depends(get_db)):
    request = bus_requests.board_request(db, request_id, driver["id"])
    return {"success": True, "message": "Passenger boarded", "request": serialize_doc(request)}


@app.delete("/api/bus-requests/{request_id}")
def cancel_bus_request(request_id: str, student: dict = Depends(require_student), db: Database = Depends(get_db)):
    bus_requests.cancel_request(db, request_id, student["id"])
    return {"success": True, "message": "Bus request cancelled successfully"}


@app.get("/api/bus-requests/bus/{bus_id}/passengers")
def bus_passengers(bus_id: str, driver: dict = Depends(require_driver), db: Database = Depends(get_db)):
    bus = fleet.get_bus(db, bus_id)
    if bus.get("driver") != driver["id"]:
        raise AuthorizationError("Not authorized to view passengers for this bus")
    passengers = roster.list_passengers(db, bus_id)
    return {
        "success": True,
        "bus": {"id": str(bus["_id"]), "busId": bus["busId"], "busName": bus.get("busName")},
        "capacity": bus.get("capacity"),
        "passengerCount": roster.count_passengers(db, bus_id),
        "passengers": [p.model_dump(mode="json") for p in passengers],
    }


# Student
@app.get("/student/buses")
def student_buses(student: dict = Depends(require_student), db: Database = Depends(get_db)):
    return {"success": True, "buses": [serialize_doc(b) for b in fleet.list_buses(db, active_only=True)]}


@app.get("/student/api/bus-location/{bus_id}")
def student_bus_location(bus_id: str, student: dict = Depends(require_student), db: Database = Depends(get_db)):
    return {"success": True, **serialize_doc(fleet.bus_location(fleet.get_bus(db, bus_id)))}


@app.get("/student/api/all-bus-locations")
def student_all_bus_locations(student: dict = Depends(require_student), db: Database = Depends(get_db)):
    return {"success": True, "buses": [serialize_doc(b) for b in fleet.all_bus_locations(db)]}


class FeedbackCreate(BaseModel):
    busId: Optional[str] = None
    subject: Optional[str] = None
    message: Optional[str] = None
    rating: Optional[int] = None
    isAnonymous: bool = False


@app.post("/student/send-feedback")
async def send_feedback(body: FeedbackCreate, student: dict = Depends(require_student),
                        db: Database = Depends(get_db)):
    entry = feedback_service.submit_feedback(
        db, student, body.subject, body.message,
        bus_ref=body.busId, rating=body.rating, is_anonymous=body.isAnonymous,
    )
    payload = serialize_doc(entry)
    await broadcaster.feedback_received(payload)
    return {
        "success": True,
        "message": "Thank you for your feedback! It has been submitted successfully.",
        "feedback": payload,
    }


class ComplaintCreate(BaseModel):
    busId: Optional[str] = None
    type: Optional[str] = None
    subject: Optional[str] = None
    message: Optional[str] = None
    severity: Optional[int] = None
    isAnonymous: bool = False


@app.post("/student/send-complaint")
def send_complaint(body: ComplaintCreate, student: dict = Depends(require_student), db: Database = Depends(get_db)):
    complaint = feedback_service.submit_complaint(
        db, student, body.subject, body.message,
        complaint_type=body.type, severity=body.severity,
        bus_ref=body.busId, is_anonymous=body.isAnonymous,
    )
    return {
        "success": True,
        "message": "Your complaint has been submitted successfully. We will review it shortly.",
        "complaint": serialize_doc(complaint),
    }


# Driver
def _driver_bus(db: Database, driver: dict) -> dict:
    bus = fleet.find_bus_for_driver(db, driver["id"])
    if not bus:
        raise NotFoundError("Bus", driver.get("busId"))
    return bus


@app.get("/driver/bus")
def driver_bus(driver: dict = Depends(require_driver), db: Database = Depends(get_db)):
    bus = _driver_bus(db, driver)
    return {
        "success": True,
        "bus": serialize_doc(bus),
        "passengerCount": roster.count_passengers(db, str(bus["_id"])),
    }


class LocationUpdate(BaseModel):
    currentLat: Optional[float] = None
    currentLon: Optional[float] = None
    boardingLat: Optional[float] = None
    boardingLon: Optional[float] = None
    boardingPointName: Optional[str] = None
    destinationLat: Optional[float] = None
    destinationLon: Optional[float] = None
    destinationPointName: Optional[str] = None


@app.post("/driver/update-location")
async def update_location(body: LocationUpdate, driver: dict = Depends(require_driver),
                          db: Database = Depends(get_db)):
    bus = _driver_bus(db, driver)
    updated = fleet.update_location(
        db, str(bus["_id"]),
        current_lat=body.currentLat, current_lon=body.currentLon,
        boarding_lat=body.boardingLat, boarding_lon=body.boardingLon, boarding_name=body.boardingPointName,
        destination_lat=body.destinationLat, destination_lon=body.destinationLon,
        destination_name=body.destinationPointName,
    )
    location = serialize_doc(fleet.bus_location(updated))
    await broadcaster.location_update(location)
    return {"success": True, "message": "Location data updated successfully", "location": location}


@app.get("/driver/feedback")
def driver_feedback(driver: dict = Depends(require_driver), db: Database = Depends(get_db)):
    items = feedback_service.list_for_driver(db, driver["id"])
    return {"success": True, "feedback": [serialize_doc(f) for f in items]}


@app.get("/driver/complaints")
def driver_complaints(driver: dict = Depends(require_driver), db: Database = Depends(get_db)):
    items = feedback_service.complaints_for_driver(db, driver["id"])
    return {"success": True, "complaints": [serialize_doc(c) for c in items]}


@app.post("/driver/feedback/{feedback_id}/mark-read")
def driver_mark_feedback_read(feedback_id: str, driver: dict = Depends(require_driver),
                              db: Database = Depends(get_db)):
    entry = feedback_service.driver_mark_read(db, feedback_id, driver["id"])
    return {"success": True, "message": "Feedback marked as read", "feedback": serialize_doc(entry)}


class FeedbackReply(BaseModel):
    response: Optional[str] = None


@app.post("/driver/feedback/{feedback_id}/respond")
def driver_respond_feedback(feedback_id: str, body: FeedbackReply, driver: dict = Depends(require_driver),
                            db: Database = Depends(get_db)):
    entry = feedback_service.driver_respond(db, feedback_id, driver["id"], body.response)
    return {"success": True, "message": "Response sent successfully", "feedback": serialize_doc(entry)}


# Management
class BusCreate(BaseModel):
    busName: Optional[str] = None
    busId: Optional[str] = None
    busNumber: Optional[str] = None
    plateNumber: Optional[str] = None
    driverName: Optional[str] = None
    route: Optional[str] = None
    capacity: Optional[int] = None
    pin: Optional[str] = None
    confirmPin: Optional[str] = None
    currentLocation: Optional[str] = None
    notes: Optional[str] = None
    isActive: bool = True


class BusUpdate(BaseModel):
    busName: Optional[str] = None
    busNumber: Optional[str] = None
    plateNumber: Optional[str] = None
    driverName: Optional[str] = None
    route: Optional[str] = None
    capacity: Optional[int] = None
    currentLocation: Optional[str] = None
    notes: Optional[str] = None
    isActive: Optional[bool] = None
    currentPin: Optional[str] = None
    newPin: Optional[str] = None
    confirmNewPin: Optional[str] = None


@app.get("/management/buses")
def management_buses(admin: dict = Depends(require_management), db: Database = Depends(get_db)):
    return {"success": True, "buses": [serialize_doc(b) for b in fleet.list_buses(db)]}


@app.post("/management/buses")
def management_add_bus(body: BusCreate, admin: dict = Depends(require_management), db: Database = Depends(get_db)):
    bus = fleet.add_bus(db, body.model_dump())
    return {"success": True, "message": "Bus added successfully", "bus": serialize_doc(bus)}


@app.get("/management/buses/{bus_id}")
def management_view_bus(bus_id: str, admin: dict = Depends(require_management), db: Database = Depends(get_db)):
    bus = fleet.get_bus(db, bus_id)
    return {
        "success": True,
        "bus": serialize_doc(bus),
        "passengerCount": roster.count_passengers(db, bus_id),
    }


@app.put("/management/buses/{bus_id}")
def management_update_bus(bus_id: str, body: BusUpdate, admin: dict = Depends(require_management),
                          db: Database = Depends(get_db)):
    bus = fleet.update_bus(db, bus_id, body.model_dump())
    return {"success": True, "message": "Bus updated successfully", "bus": serialize_doc(bus)}


@app.delete("/management/buses/{bus_id}")
def management_delete_bus(bus_id: str, admin: dict = Depends(require_management), db: Database = Depends(get_db)):
    fleet.delete_bus(db, bus_id)
    return {"success": True, "message": "Bus deleted successfully"}


@app.get("/management/students")
def management_students(admin: dict = Depends(require_management), db: Database = Depends(get_db)):
    students = get_documents("user", {"role": "student"}, database=db)
    return {"success": True, "students": [serialize_doc(s) for s in students]}


class AssignBus(BaseModel):
    studentId: Optional[str] = None
    busId: Optional[str] = None


@app.post("/management/students/assign-bus")
def management_assign_bus(body: AssignBus, admin: dict = Depends(require_management), db: Database = Depends(get_db)):
    student = fleet.assign_bus(db, body.studentId, body.busId)
    return {"success": True, "message": "Bus assigned to student successfully", "student": serialize_doc(student)}


@app.get("/management/feedback")
def management_feedback(admin: dict = Depends(require_management), db: Database = Depends(get_db)):
    items = feedback_service.inbox(db)
    return {
        "success": True,
        "feedback": [serialize_doc(f) for f in items["feedback"]],
        "complaints": [serialize_doc(c) for c in items["complaints"]],
    }


class StatusPatch(BaseModel):
    status: Optional[str] = None
    response: Optional[str] = None
    actionTaken: Optional[str] = None


@app.post("/management/feedback/{feedback_id}/status")
def management_feedback_status(feedback_id: str, body: StatusPatch, admin: dict = Depends(require_management),
                               db: Database = Depends(get_db)):
    entry = feedback_service.update_feedback_status(db, feedback_id, body.status, body.response)
    return {"success": True, "message": "Feedback status updated successfully", "feedback": serialize_doc(entry)}


@app.post("/management/feedback/{feedback_id}/mark-read")
def management_feedback_read(feedback_id: str, admin: dict = Depends(require_management),
                             db: Database = Depends(get_db)):
    entry = feedback_service.admin_mark_read(db, "feedback", feedback_id)
    return {"success": True, "message": "Feedback marked as read", "feedback": serialize_doc(entry)}


@app.post("/management/complaints/{complaint_id}/status")
def management_complaint_status(complaint_id: str, body: StatusPatch, admin: dict = Depends(require_management),
                                db: Database = Depends(get_db)):
    entry = feedback_service.update_complaint_status(db, complaint_id, body.status, body.response, body.actionTaken)
    return {"success": True, "message": "Complaint status updated successfully", "complaint": serialize_doc(entry)}


@app.post("/management/complaints/{complaint_id}/mark-read")
def management_complaint_read(complaint_id: str, admin: dict = Depends(require_management),
                              db: Database = Depends(get_db)):
    entry = feedback_service.admin_mark_read(db, "complaint", complaint_id)
    return {"success": True, "message": "Complaint marked as read", "complaint": serialize_doc(entry)}


# Seeder (dev-only)
@app.post("/seed")
def seed_data(db: Database = Depends(get_db)):
    if settings.ENVIRONMENT == "production":
        raise AuthorizationError("Seeding is disabled in production")
    created = fleet.seed_fleet(db)
    if not created:
        return {"seeded": False, "message": "Already seeded"}
    return {"seeded": True, "buses": created}


# Live updates via WebSocket
@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = None):
    try:
        claims = decode_token(token or "")
    except AuthenticationError:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    role = claims["role"]
    await broadcaster.connect(websocket)
    try:
        while True:
            message = await websocket.receive_json()
            await broadcaster.handle_message(websocket, role, message)
    except WebSocketDisconnect:
        broadcaster.disconnect(websocket)
    except Exception as e:
        logger.warning(f"WebSocket for {role} {claims['sub']} closed after error: {e}")
        broadcaster.disconnect(websocket)
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close(code=status.WS_1011_INTERNAL_ERROR)


# Database diagnostics
@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
        "subscribers": broadcaster.subscriber_count(),
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if settings.DATABASE_URL else "❌ Not Set"
            response["database_name"] = settings.DATABASE_NAME
            collections = database.db.list_collection_names()
            response["collections"] = collections[:10]
            response["connection_status"] = "Connected"
    except Exception as e:
        response["database"] = f"⚠️  Error: {str(e)[:80]}"
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", settings.PORT))
    uvicorn.run(app, host="0.0.0.0", port=port)
