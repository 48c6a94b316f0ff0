"""
Database Schemas for Campus Bus

Each Pydantic model corresponds to a MongoDB collection (collection name is the lowercase of the class name).
"""
from pydantic import BaseModel, Field, EmailStr
from typing import Optional, List, Literal
from datetime import datetime

Role = Literal["student", "driver", "management"]

class User(BaseModel):
    name: str
    email: EmailStr
    password: Optional[str] = None
    role: Role = "student"
    studentId: Optional[str] = None
    department: Optional[str] = None
    assignedBus: Optional[str] = None
    boardingStop: str = ""
    busRequests: List[str] = []
    isVerified: bool = False

class ScheduleEntry(BaseModel):
    time: str
    departure: str
    arrival: str
    days: List[str] = []

class Activity(BaseModel):
    action: str
    details: str = ""
    timestamp: datetime

class Coordinates(BaseModel):
    lat: Optional[float] = None
    lon: Optional[float] = None
    lastUpdated: Optional[datetime] = None

class Point(BaseModel):
    name: str = ""
    lat: Optional[float] = None
    lon: Optional[float] = None

class Bus(BaseModel):
    busName: str
    busId: str
    busNumber: str
    plateNumber: str
    driverName: str
    driver: Optional[str] = None  # driver user id
    route: str
    capacity: int = Field(..., ge=1)
    pin: str  # hashed
    currentLocation: str = "Not specified"
    currentCoordinates: Coordinates = Coordinates()
    boardingPoint: Point = Point()
    destinationPoint: Point = Point()
    notes: str = ""
    isActive: bool = True
    schedule: List[ScheduleEntry] = []
    recentActivity: List[Activity] = []

RequestStatus = Literal["pending", "accepted", "rejected", "boarded", "cancelled"]

class BusRequest(BaseModel):
    student: str
    bus: str
    driver: Optional[str] = None
    status: RequestStatus = "pending"
    boardingStop: str
    destination: str
    requestTime: datetime
    responseTime: Optional[datetime] = None
    boardedTime: Optional[datetime] = None

FeedbackStatus = Literal["pending", "responding", "resolved"]

class Feedback(BaseModel):
    studentId: Optional[str] = None
    studentName: str
    isAnonymous: bool = False
    subject: str
    message: str
    rating: Optional[int] = Field(None, ge=1, le=5)
    busId: Optional[str] = None
    busName: str = "General Feedback"
    busNumber: str = "N/A"
    driverId: Optional[str] = None
    driverName: str = "N/A"
    readByDriver: bool = False
    readByAdmin: bool = False
    driverResponse: Optional[str] = None
    adminResponse: Optional[str] = None
    status: FeedbackStatus = "pending"

ComplaintType = Literal["schedule", "behavior", "cleanliness", "safety", "technical", "other"]
ComplaintStatus = Literal["open", "investigating", "action_taken", "resolved", "closed"]

class Complaint(BaseModel):
    studentId: Optional[str] = None
    studentName: str
    isAnonymous: bool = False
    subject: str
    message: str
    type: ComplaintType = "other"
    severity: int = Field(3, ge=1, le=5)
    busId: Optional[str] = None
    busName: str = "N/A"
    busNumber: str = "N/A"
    driverId: Optional[str] = None
    driverName: str = "N/A"
    readByAdmin: bool = False
    adminResponse: Optional[str] = None
    adminActionTaken: Optional[str] = None
    status: ComplaintStatus = "open"
    resolvedAt: Optional[datetime] = None
