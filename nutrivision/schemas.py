"""
Pydantic schemas for the HTTP surface.

Requests and responses are camelCase on the wire. Response schemas are built
explicitly from the table models and never carry credential hashes.
"""

from datetime import date as date_type, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

from .models import (
    AccountKind, ApprovalStatus, Appointment, AppointmentStatus, CallQuality,
    CallSession, CallType, ChatMessage, ChatThread, MessageType, SessionType,
    ThreadStatus,
)


class ApiModel(BaseModel):
    """Base schema: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


TIME_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


class HealthProfile(ApiModel):
    age: Optional[int] = Field(default=None, ge=13, le=120)
    gender: Optional[str] = Field(default=None, pattern=r"^(male|female|other)$")
    height_cm: Optional[float] = Field(default=None, ge=100, le=300)
    weight_kg: Optional[float] = Field(default=None, ge=30, le=500)
    activity_level: Optional[str] = None


class RegisterPatientRequest(ApiModel):
    name: str = Field(min_length=2, max_length=50)
    email: EmailStr
    password: str = Field(min_length=6)
    profile: Optional[HealthProfile] = None


class RegisterProfessionalRequest(ApiModel):
    name: str = Field(min_length=2, max_length=100)
    email: EmailStr
    password: str = Field(min_length=6)
    phone: str = Field(min_length=5)
    city: str = Field(min_length=1)
    country: str = Field(min_length=1)
    qualification: str = Field(min_length=1)
    experience_years: int = Field(ge=0)
    specializations: List[str] = Field(min_length=1)
    bio: Optional[str] = Field(default=None, max_length=500)
    consultation_rate: Optional[float] = Field(default=None, ge=0)
    availability: Dict[str, Any] = Field(default_factory=dict)


class LoginRequest(ApiModel):
    email: EmailStr
    password: str = Field(min_length=1)


class ChangePasswordRequest(ApiModel):
    current_password: str = Field(min_length=1)
    new_password: str = Field(min_length=6)


class AccountRead(ApiModel):
    id: str
    kind: AccountKind
    name: str
    email: str
    is_active: bool
    last_login: Optional[datetime] = None
    profile: Optional[Dict[str, Any]] = None
    specializations: Optional[List[str]] = None
    consultation_rate: Optional[float] = None
    is_approved: Optional[bool] = None
    is_rejected: Optional[bool] = None

    @classmethod
    def from_account(cls, account, kind: AccountKind) -> "AccountRead":
        data = {
            "id": account.id,
            "kind": kind,
            "name": account.name,
            "email": account.email,
            "is_active": account.is_active,
            "last_login": account.last_login,
        }
        if kind == AccountKind.PATIENT:
            data["profile"] = account.profile
        elif kind == AccountKind.PROFESSIONAL:
            data.update(
                specializations=account.specializations,
                consultation_rate=account.consultation_rate,
                is_approved=account.is_approved,
                is_rejected=account.is_rejected,
            )
        return cls(**data)


class AccountResponse(ApiModel):
    success: bool = True
    message: str
    account: AccountRead


class AuthResponse(AccountResponse):
    token: Optional[str] = None


class ActionResult(ApiModel):
    success: bool = True
    message: str
    count: Optional[int] = None


class AccountStatusRequest(ApiModel):
    is_active: bool


class RejectRequest(ApiModel):
    reason: str = Field(min_length=5)


class BookAppointmentRequest(ApiModel):
    professional_id: str = Field(min_length=1)
    date: date_type
    time: str = Field(pattern=TIME_PATTERN)
    session_type: SessionType
    reason: str = Field(min_length=10)
    duration: Optional[int] = Field(default=None, gt=0, le=480)
    notes: Optional[str] = None


class UpdateStatusRequest(ApiModel):
    status: AppointmentStatus
    notes: Optional[str] = None


class StartCallRequest(ApiModel):
    call_type: CallType


class EndCallRequest(ApiModel):
    quality: Optional[CallQuality] = None
    duration: Optional[int] = Field(default=None, ge=0)


class CallParticipantRead(ApiModel):
    user_id: str
    user_kind: AccountKind
    joined_at: datetime
    left_at: Optional[datetime] = None


class CallSessionRead(ApiModel):
    id: str
    appointment_id: str
    type: CallType
    start_time: datetime
    end_time: Optional[datetime] = None
    duration: Optional[int] = None
    quality: Optional[CallQuality] = None
    participants: List[CallParticipantRead] = []
    meeting_link: Optional[str] = None

    @classmethod
    def from_model(cls, call: CallSession, meeting_link: Optional[str] = None) -> "CallSessionRead":
        return cls(
            id=call.id,
            appointment_id=call.appointment_id,
            type=call.call_type,
            start_time=call.start_time,
            end_time=call.end_time,
            duration=call.duration,
            quality=call.quality,
            participants=[
                CallParticipantRead(
                    user_id=p.user_id, user_kind=p.user_kind, joined_at=p.joined_at, left_at=p.left_at
                )
                for p in call.participants
            ],
            meeting_link=meeting_link,
        )


class AppointmentNotes(ApiModel):
    patient: Optional[str] = None
    professional: Optional[str] = None


class AppointmentRead(ApiModel):
    id: str
    patient_id: str
    professional_id: str
    date: date_type
    time: str
    duration: int
    session_type: SessionType
    reason: str
    fee: float
    approval_status: ApprovalStatus
    approved_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    status: AppointmentStatus
    notes: AppointmentNotes
    communication_enabled: bool
    chat_thread_id: Optional[str] = None
    meeting_link: Optional[str] = None
    call_history: List[CallSessionRead] = []
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, appointment: Appointment) -> "AppointmentRead":
        return cls(
            id=appointment.id,
            patient_id=appointment.patient_id,
            professional_id=appointment.professional_id,
            date=appointment.date,
            time=appointment.time,
            duration=appointment.duration,
            session_type=appointment.session_type,
            reason=appointment.reason,
            fee=appointment.fee,
            approval_status=appointment.approval_status,
            approved_at=appointment.approved_at,
            rejection_reason=appointment.rejection_reason,
            status=appointment.status,
            notes=AppointmentNotes(
                patient=appointment.patient_notes, professional=appointment.professional_notes
            ),
            communication_enabled=appointment.communication_enabled,
            chat_thread_id=appointment.chat_thread_id,
            meeting_link=appointment.meeting_link,
            call_history=[CallSessionRead.from_model(c) for c in appointment.call_history],
            created_at=appointment.created_at,
            updated_at=appointment.updated_at,
        )


class AppointmentResponse(ApiModel):
    success: bool = True
    message: str
    appointment: AppointmentRead
    chat_thread_id: Optional[str] = None


class Pagination(ApiModel):
    page: int
    limit: int
    total: int
    pages: int


class AppointmentListResponse(ApiModel):
    success: bool = True
    appointments: List[AppointmentRead]
    pagination: Pagination


class CommunicationOptions(ApiModel):
    chat_enabled: bool
    call_enabled: bool
    video_enabled: bool


class AppointmentDetailsResponse(ApiModel):
    success: bool = True
    appointment: AppointmentRead
    communication_options: CommunicationOptions


class CallSessionResponse(ApiModel):
    success: bool = True
    message: str
    call_session: CallSessionRead


class PostMessageRequest(ApiModel):
    content: str
    message_type: MessageType = MessageType.TEXT


class ChatMessageRead(ApiModel):
    id: int
    thread_id: str
    sender_id: str
    sender_kind: AccountKind
    content: str
    message_type: MessageType
    is_read: bool
    read_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_model(cls, message: ChatMessage) -> "ChatMessageRead":
        return cls(
            id=message.id,
            thread_id=message.thread_id,
            sender_id=message.sender_id,
            sender_kind=message.sender_kind,
            content=message.content,
            message_type=message.message_type,
            is_read=message.is_read,
            read_at=message.read_at,
            created_at=message.created_at,
        )


class LastMessage(ApiModel):
    content: str
    timestamp: datetime
    sender_id: str
    sender_kind: AccountKind


class ChatThreadRead(ApiModel):
    id: str
    appointment_id: str
    patient_id: str
    professional_id: str
    status: ThreadStatus
    last_message: Optional[LastMessage] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, thread: ChatThread) -> "ChatThreadRead":
        last_message = None
        if thread.last_message_content is not None:
            last_message = LastMessage(
                content=thread.last_message_content,
                timestamp=thread.last_message_at,
                sender_id=thread.last_message_sender_id,
                sender_kind=thread.last_message_sender_kind,
            )
        return cls(
            id=thread.id,
            appointment_id=thread.appointment_id,
            patient_id=thread.patient_id,
            professional_id=thread.professional_id,
            status=thread.status,
            last_message=last_message,
            created_at=thread.created_at,
            updated_at=thread.updated_at,
        )


class MessageResponse(ApiModel):
    success: bool = True
    message: str
    message_data: ChatMessageRead


class MessagePage(ApiModel):
    success: bool = True
    thread: ChatThreadRead
    messages: List[ChatMessageRead]
    page: int
    limit: int
    total: int
    has_more: bool


class ThreadListResponse(ApiModel):
    success: bool = True
    threads: List[ChatThreadRead]
    count: int


class UnreadCountResponse(ApiModel):
    success: bool = True
    unread_count: int
