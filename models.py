"""
CheckOnMe Pydantic Models
"""
from __future__ import annotations

import datetime as dt
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

CheckInStatus = Literal["scheduled", "active", "acknowledged", "escalated", "missed", "cancelled"]
CheckInType = Literal["hiking", "date", "road-trip", "solo-activity", "work", "other"]
Channel = Literal["sms", "email", "call"]
DeliveryStatus = Literal["pending", "sent", "partial", "failed"]


class Location(BaseModel):
    latitude: float
    longitude: float
    label: Optional[str] = None


class Companion(BaseModel):
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    social_media: Optional[str] = None


class CustomContact(BaseModel):
    """Inline escalation target used only by the check-in that carries it.
    No notification_methods means every channel it has an address for."""
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    notification_methods: List[Channel] = Field(default_factory=list)


class Contact(BaseModel):
    id: str
    user_id: str
    first_name: str
    last_name: str = ""
    phone_number: Optional[str] = None
    email: Optional[str] = None
    relationship: str = ""
    is_primary: bool = False
    notification_methods: List[Channel] = Field(default_factory=list)

    @property
    def name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class ContactIn(BaseModel):
    first_name: str
    last_name: str = ""
    phone_number: Optional[str] = None
    email: Optional[str] = None
    relationship: str = ""
    is_primary: bool = False
    notification_methods: List[Channel] = Field(default_factory=list)


class CheckIn(BaseModel):
    id: str
    user_id: str
    title: str
    description: str = ""
    type: CheckInType = "other"
    status: CheckInStatus = "scheduled"

    scheduled_time: dt.datetime
    interval_minutes: int
    response_deadline: dt.datetime
    grace_minutes: int = 0
    acknowledged_at: Optional[dt.datetime] = None
    escalated_at: Optional[dt.datetime] = None
    created_at: dt.datetime
    updated_at: dt.datetime

    confirmation_code: str

    contacts: List[str] = Field(default_factory=list)
    custom_contacts: List[CustomContact] = Field(default_factory=list)
    companions: List[Companion] = Field(default_factory=list)
    location: Optional[Location] = None

    escalation_reason: Optional[str] = None   # "deadline" | "attempts_exhausted"
    delivery_status: Optional[DeliveryStatus] = None


class CheckInCreate(BaseModel):
    title: str
    description: str = ""
    type: CheckInType = "other"
    scheduled_time: dt.datetime
    interval_minutes: int
    grace_minutes: Optional[int] = None
    confirmation_code: Optional[str] = None   # generated when absent
    contacts: List[str] = Field(default_factory=list)
    custom_contacts: List[CustomContact] = Field(default_factory=list)
    companions: List[Companion] = Field(default_factory=list)
    location: Optional[Location] = None


class CheckInEdit(BaseModel):
    """Partial update; only fields that are set are replaced."""
    title: Optional[str] = None
    description: Optional[str] = None
    type: Optional[CheckInType] = None
    scheduled_time: Optional[dt.datetime] = None
    interval_minutes: Optional[int] = None
    grace_minutes: Optional[int] = None
    confirmation_code: Optional[str] = None
    regenerate_code: bool = False
    contacts: Optional[List[str]] = None
    custom_contacts: Optional[List[CustomContact]] = None
    companions: Optional[List[Companion]] = None
    location: Optional[Location] = None


class EscalationTarget(BaseModel):
    """One person to notify, flattened from a contact ref or a custom contact."""
    key: str                    # "contact:{id}" or "custom:{index}"
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    notification_methods: List[Channel] = Field(default_factory=list)


class EscalationEvent(BaseModel):
    checkin_id: str
    user_id: str
    title: str
    scheduled_time: dt.datetime
    response_deadline: dt.datetime
    escalated_at: dt.datetime
    reason: str
    contacts: List[str] = Field(default_factory=list)
    custom_contacts: List[CustomContact] = Field(default_factory=list)
    companions: List[Companion] = Field(default_factory=list)
    location: Optional[Location] = None


class DeviceIn(BaseModel):
    device_token: str


class CodeIn(BaseModel):
    code: str
