"""
Data models for the Nutri-Vision backend.

This module defines the database models: accounts of the three kinds,
appointments with their call history, chat threads and messages.
"""

import uuid
from dataclasses import dataclass
from datetime import date as date_type, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column
from sqlmodel import SQLModel, Field, Relationship


def new_id() -> str:
    return uuid.uuid4().hex


# Enums
class AccountKind(str, Enum):
    PATIENT = "patient"
    PROFESSIONAL = "professional"
    OPERATOR = "operator"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class AppointmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    MISSED = "missed"


class SessionType(str, Enum):
    VIDEO = "video"
    CHAT = "chat"
    PHONE = "phone"


class CallType(str, Enum):
    VOICE = "voice"
    VIDEO = "video"


class CallQuality(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    VOICE = "voice"


class ThreadStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


# Slot-blocking states: an appointment holds its professional's date+time
# slot only while both axes are in these sets.
BLOCKING_STATUSES = (AppointmentStatus.SCHEDULED, AppointmentStatus.IN_PROGRESS)
BLOCKING_APPROVALS = (ApprovalStatus.PENDING, ApprovalStatus.APPROVED)


@dataclass(frozen=True)
class Principal:
    """Authenticated subject, tagged with the account collection it lives in."""

    subject_id: str
    kind: AccountKind


# Database Models
class AccountBase(SQLModel):
    """Columns shared by every account collection."""

    name: str = Field(max_length=100)
    email: str = Field(index=True, unique=True, max_length=255, description="Stored lower-cased")
    password_hash: str = Field(default="", max_length=255)
    is_active: bool = Field(default=True)
    last_login: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Patient(AccountBase, table=True):
    """Patient account with a free-form health profile."""

    id: str = Field(default_factory=new_id, primary_key=True)
    profile: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))


class Professional(AccountBase, table=True):
    """Nutrition professional. Must be approved by an operator before login."""

    id: str = Field(default_factory=new_id, primary_key=True)
    phone: Optional[str] = Field(default=None, max_length=40)
    city: Optional[str] = Field(default=None, max_length=100)
    country: Optional[str] = Field(default=None, max_length=100)
    qualification: str = Field(default="", max_length=255)
    experience_years: int = Field(default=0)
    specializations: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    bio: Optional[str] = Field(default=None, max_length=500)
    consultation_rate: Optional[float] = Field(default=None)
    availability: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))

    # Admin approval (mutually exclusive flags)
    is_approved: bool = Field(default=False)
    is_rejected: bool = Field(default=False)
    approved_at: Optional[datetime] = Field(default=None)
    approved_by: Optional[str] = Field(default=None)
    rejected_at: Optional[datetime] = Field(default=None)
    rejected_by: Optional[str] = Field(default=None)
    rejection_reason: Optional[str] = Field(default=None)


class Operator(AccountBase, table=True):
    """Back-office operator account."""

    id: str = Field(default_factory=new_id, primary_key=True)
    role: str = Field(default="admin", max_length=40)


ACCOUNT_MODELS = {
    AccountKind.PATIENT: Patient,
    AccountKind.PROFESSIONAL: Professional,
    AccountKind.OPERATOR: Operator,
}


class Appointment(SQLModel, table=True):
    """Appointment with independent approval and execution axes."""

    id: str = Field(default_factory=new_id, primary_key=True)
    patient_id: str = Field(foreign_key="patient.id", index=True)
    professional_id: str = Field(foreign_key="professional.id", index=True)

    date: date_type
    time: str = Field(max_length=5, description="HH:MM")
    duration: int = Field(default=60, description="Minutes")
    session_type: SessionType
    reason: str
    fee: float

    approval_status: ApprovalStatus = Field(default=ApprovalStatus.PENDING, index=True)
    approved_at: Optional[datetime] = Field(default=None)
    rejection_reason: Optional[str] = Field(default=None)
    status: AppointmentStatus = Field(default=AppointmentStatus.SCHEDULED)

    patient_notes: Optional[str] = Field(default=None)
    professional_notes: Optional[str] = Field(default=None)

    communication_enabled: bool = Field(default=False)
    chat_thread_id: Optional[str] = Field(default=None)
    meeting_link: Optional[str] = Field(default=None)

    # Non-null exactly while this appointment blocks its slot
    slot_key: Optional[str] = Field(default=None, unique=True, max_length=120)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    call_history: List["CallSession"] = Relationship(
        back_populates="appointment",
        sa_relationship_kwargs={"order_by": "CallSession.start_time", "cascade": "all, delete-orphan"},
    )

    def blocks_slot(self) -> bool:
        return self.status in BLOCKING_STATUSES and self.approval_status in BLOCKING_APPROVALS

    def party_kind(self, subject_id: str) -> Optional[AccountKind]:
        if subject_id == self.patient_id:
            return AccountKind.PATIENT
        if subject_id == self.professional_id:
            return AccountKind.PROFESSIONAL
        return None


def slot_key_for(professional_id: str, day: date_type, time: str) -> str:
    return f"{professional_id}|{day.isoformat()}|{time}"


class CallSession(SQLModel, table=True):
    """One voice/video call held within an appointment."""

    id: str = Field(default_factory=new_id, primary_key=True)
    appointment_id: str = Field(foreign_key="appointment.id", index=True)
    call_type: CallType
    start_time: datetime = Field(default_factory=datetime.utcnow)
    end_time: Optional[datetime] = Field(default=None)
    duration: Optional[int] = Field(default=None, description="Minutes")
    quality: Optional[CallQuality] = Field(default=None)
    # Equals appointment_id while the call is open
    open_key: Optional[str] = Field(default=None, unique=True, max_length=32)

    appointment: Optional[Appointment] = Relationship(back_populates="call_history")
    participants: List["CallParticipant"] = Relationship(
        back_populates="call",
        sa_relationship_kwargs={"cascade": "all, delete-orphan", "lazy": "selectin"},
    )


class CallParticipant(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    call_id: str = Field(foreign_key="callsession.id", index=True)
    user_id: str
    user_kind: AccountKind
    joined_at: datetime = Field(default_factory=datetime.utcnow)
    left_at: Optional[datetime] = Field(default=None)

    call: Optional[CallSession] = Relationship(back_populates="participants")


class ChatThread(SQLModel, table=True):
    """Two-party message thread, one per approved appointment."""

    id: str = Field(default_factory=new_id, primary_key=True)
    appointment_id: str = Field(foreign_key="appointment.id", unique=True)
    patient_id: str = Field(index=True)
    professional_id: str = Field(index=True)
    status: ThreadStatus = Field(default=ThreadStatus.ACTIVE)

    last_message_content: Optional[str] = Field(default=None)
    last_message_at: Optional[datetime] = Field(default=None)
    last_message_sender_id: Optional[str] = Field(default=None)
    last_message_sender_kind: Optional[AccountKind] = Field(default=None)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def is_participant(self, subject_id: str) -> bool:
        return subject_id in (self.patient_id, self.professional_id)

    def other_participant(self, subject_id: str) -> str:
        return self.professional_id if subject_id == self.patient_id else self.patient_id


class ChatMessage(SQLModel, table=True):
    """Immutable message; only the read flag moves, and only forward."""

    id: Optional[int] = Field(default=None, primary_key=True)
    thread_id: str = Field(foreign_key="chatthread.id", index=True)
    sender_id: str
    sender_kind: AccountKind
    content: str
    message_type: MessageType = Field(default=MessageType.TEXT)
    is_read: bool = Field(default=False)
    read_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=datetime.utcnow)


