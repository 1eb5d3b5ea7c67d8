"""
Database Schemas for the RVVM Visitor Management System

Each Pydantic model below represents a document in the store. Field names are
snake_case in Python and persisted in camelCase (``purpose_of_visit`` is
stored as ``purposeOfVisit``) so the documents keep the schema the web
client already reads.

Collections:
- users
- visits
- visitor_requests
- notifications
"""
from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

Role = Literal["visitor", "host", "security", "admin"]
VisitStatus = Literal["pending", "approved", "rejected", "checked_in", "checked_out"]
VisitType = Literal["registration", "quick_checkin", "cab"]
RequestStatus = Literal["pending", "approved", "rejected"]
NotificationType = Literal["visitor_request", "visitor_approved", "visitor_rejected", "cab_entry", "general"]

MIN_PASSWORD_LENGTH = 6


class Document(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def to_api(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


# -------------------- Users --------------------
class User(Document):
    id: Optional[str] = None
    email: EmailStr = Field(..., description="Email address, unique per user")
    name: str = Field(..., description="Full name")
    role: Role = Field("host", description="Role of the user")
    photo_url: Optional[str] = None
    department: Optional[str] = None
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None


# -------------------- Visits --------------------
class Visit(Document):
    id: Optional[str] = None
    name: str
    contact_number: str
    email: Optional[str] = None
    address: Optional[str] = None
    department: str
    whom_to_meet: str
    whom_to_meet_email: Optional[str] = None
    purpose_of_visit: str
    number_of_visitors: Optional[int] = None
    vehicle_number: Optional[str] = None
    document_type: Optional[str] = None
    photo_url: Optional[str] = None
    remarks: Optional[str] = None

    status: VisitStatus = "pending"
    type: VisitType = "registration"
    created_at: datetime
    entry_time: datetime
    exit_time: Optional[datetime] = None

    is_approved: bool = False
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    checked_in_by: Optional[str] = None
    checked_out_by: Optional[str] = None

    send_notification: Optional[bool] = None
    notification_sent: Optional[bool] = None

    # cab entries
    cab_provider: Optional[str] = None
    driver_name: Optional[str] = None
    driver_contact: Optional[str] = None


# -------------------- Visitor requests --------------------
class VisitorRequest(Document):
    id: Optional[str] = None
    visit_id: str
    visitor_name: str
    visitor_phone: str
    visitor_email: Optional[str] = None
    department: str
    host_id: str
    host_name: str
    host_email: str
    purpose_of_visit: str
    number_of_visitors: int = 1
    vehicle_number: Optional[str] = None
    requested_time: datetime
    status: RequestStatus = "pending"
    approval_time: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    created_by: str = Field(..., description="User ID of the security officer who raised the request")
    security_notes: Optional[str] = None


# -------------------- Notifications --------------------
class Notification(Document):
    id: Optional[str] = None
    type: NotificationType = "general"
    title: str
    message: str
    timestamp: datetime
    is_read: bool = False
    sender: Optional[str] = Field(None, alias="from")
    recipient: str = Field(..., alias="to")
    data: Optional[Dict[str, Any]] = None


# -------------------- Request bodies --------------------
class VisitorRegistration(Document):
    name: str = Field(..., min_length=1)
    contact_number: str = Field(..., min_length=1)
    email: Optional[EmailStr] = None
    address: Optional[str] = None
    department: str = Field(..., min_length=1)
    whom_to_meet: str = Field(..., min_length=1)
    whom_to_meet_email: Optional[str] = None
    purpose_of_visit: str = Field(..., min_length=1)
    number_of_visitors: Optional[int] = Field(None, ge=1)
    vehicle_number: Optional[str] = None
    document_type: Optional[str] = None
    photo_url: Optional[str] = None
    remarks: Optional[str] = None
    send_notification: Optional[bool] = None

    @field_validator("email", mode="before")
    @classmethod
    def blank_email_is_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v


class CabEntry(VisitorRegistration):
    cab_provider: str = Field(..., min_length=1)
    driver_name: str = Field(..., min_length=1)
    driver_contact: str = Field(..., min_length=1)
    vehicle_number: str = Field(..., min_length=1)


class QuickCheckInRequest(Document):
    contact_number: str = Field(..., min_length=1)


class RejectRequest(Document):
    reason: Optional[str] = None


class ScanRequest(Document):
    payload: str = Field(..., min_length=1, description="Raw QR code contents")


class VisitorRequestCreate(VisitorRegistration):
    host_id: str = Field(..., min_length=1)
    security_notes: Optional[str] = None

    # filled in from the host's user record
    whom_to_meet: Optional[str] = None
    department: Optional[str] = None


class LoginRequest(Document):
    email: EmailStr
    password: str


class RegisterRequest(Document):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=MIN_PASSWORD_LENGTH)
    role: Literal["visitor", "host", "security"] = "host"
    department: Optional[str] = None
    photo_url: Optional[str] = None


class ProfileUpdate(Document):
    name: Optional[str] = Field(None, min_length=1)
    photo_url: Optional[str] = None
    department: Optional[str] = None
