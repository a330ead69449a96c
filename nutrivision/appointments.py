"""
Appointment lifecycle for the Nutri-Vision backend.

An appointment moves along two independent axes:

- approval: pending -> approved | rejected (terminal once decided)
- execution: scheduled -> in-progress | completed | cancelled | missed

Chat and calls gate strictly on the approval axis. Approval flips
``communication_enabled``, creates the chat thread and links it, all inside
one transaction guarded by a conditional update on ``approval_status``, so
concurrent approvals cannot both succeed and no reader sees the effect half
applied.
"""

from datetime import date, datetime
from typing import List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from .chat import create_thread
from .db import AccountCRUD, AppointmentCRUD, CallCRUD
from .errors import (
    AccessDeniedError, ConflictError, NotFoundError, ValidationError,
    communication_not_enabled, no_active_call,
)
from .models import (
    AccountKind, Appointment, AppointmentStatus, ApprovalStatus, CallParticipant,
    CallQuality, CallSession, CallType, ChatThread, SessionType, slot_key_for,
)
from .observability import setup_logging, trace_operation
from .settings import settings

logger = setup_logging()

MIN_REASON_LENGTH = 10
MIN_REJECTION_REASON_LENGTH = 5
DEFAULT_DURATION_MINUTES = 60


def _slot_conflict() -> ConflictError:
    return ConflictError("Professional is not available at this time", reason="SlotConflict")


def _already_decided() -> ConflictError:
    return ConflictError("Appointment already processed", reason="AlreadyDecided")


def _not_found() -> NotFoundError:
    return NotFoundError("Appointment not found")


def _get_for_professional(session: Session, appointment_id: str, professional_id: str) -> Appointment:
    appointment = AppointmentCRUD.get_by_id(session, appointment_id)
    if appointment is None or appointment.professional_id != professional_id:
        raise _not_found()
    return appointment


def get_for_party(session: Session, appointment_id: str, actor_id: str) -> Tuple[Appointment, AccountKind]:
    """Load an appointment the actor is a party to, with the actor's role on it."""
    appointment = AppointmentCRUD.get_by_id(session, appointment_id)
    if appointment is None:
        raise _not_found()
    role = appointment.party_kind(actor_id)
    if role is None:
        raise AccessDeniedError("You are not a party to this appointment")
    return appointment, role


def book(
    session: Session,
    patient_id: str,
    professional_id: str,
    day: date,
    time: str,
    session_type: SessionType,
    reason: str,
    duration: Optional[int] = None,
    notes: Optional[str] = None,
) -> Appointment:
    """Create a pending appointment, snapshotting the professional's rate as the fee."""
    reason = (reason or "").strip()
    if len(reason) < MIN_REASON_LENGTH:
        raise ValidationError(f"Reason must be at least {MIN_REASON_LENGTH} characters")

    professional = AccountCRUD.get(session, AccountKind.PROFESSIONAL, professional_id)
    if professional is None or not professional.is_active or not professional.is_approved:
        raise NotFoundError("Professional not found or unavailable", reason="ProfessionalUnavailable")

    if AppointmentCRUD.find_slot_holder(session, professional_id, day, time) is not None:
        raise _slot_conflict()

    fee = professional.consultation_rate
    if fee is None:
        fee = settings.DEFAULT_CONSULTATION_RATE

    appointment = Appointment(
        patient_id=patient_id,
        professional_id=professional_id,
        date=day,
        time=time,
        duration=duration or DEFAULT_DURATION_MINUTES,
        session_type=session_type,
        reason=reason,
        fee=fee,
        patient_notes=notes or None,
        approval_status=ApprovalStatus.PENDING,
        status=AppointmentStatus.SCHEDULED,
        communication_enabled=False,
        slot_key=slot_key_for(professional_id, day, time),
    )
    session.add(appointment)
    try:
        session.commit()
    except IntegrityError:
        # Lost the race for the slot to a concurrent booking
        session.rollback()
        raise _slot_conflict()
    session.refresh(appointment)

    logger.info(
        "Appointment booked",
        appointment_id=appointment.id,
        patient_id=patient_id,
        professional_id=professional_id,
        session_type=session_type.value,
    )
    return appointment


def approve(session: Session, appointment_id: str, professional_id: str) -> Tuple[Appointment, ChatThread]:
    """Approve a pending appointment and provision its chat thread as one unit."""
    appointment = _get_for_professional(session, appointment_id, professional_id)
    if appointment.approval_status != ApprovalStatus.PENDING:
        raise _already_decided()

    with trace_operation("approve_appointment", appointment_id=appointment_id, professional_id=professional_id):
        try:
            thread = create_thread(session, appointment.id, appointment.patient_id, appointment.professional_id)
            if not AppointmentCRUD.mark_approved(session, appointment_id, professional_id, thread.id):
                session.rollback()
                raise _already_decided()
            session.commit()
        except IntegrityError:
            # Another approval already created this appointment's thread
            session.rollback()
            raise _already_decided()

    session.refresh(appointment)
    session.refresh(thread)
    return appointment, thread


def reject(session: Session, appointment_id: str, professional_id: str, reason: str) -> Appointment:
    """Reject a pending appointment. Terminal: there is no path back."""
    reason = (reason or "").strip()
    if len(reason) < MIN_REJECTION_REASON_LENGTH:
        raise ValidationError(f"Rejection reason must be at least {MIN_REJECTION_REASON_LENGTH} characters")

    appointment = _get_for_professional(session, appointment_id, professional_id)
    if appointment.approval_status != ApprovalStatus.PENDING:
        raise _already_decided()

    if not AppointmentCRUD.mark_rejected(session, appointment_id, professional_id, reason):
        session.rollback()
        raise _already_decided()
    session.commit()
    session.refresh(appointment)

    logger.info("Appointment rejected", appointment_id=appointment_id, professional_id=professional_id)
    return appointment


def update_status(
    session: Session,
    appointment_id: str,
    actor_id: str,
    new_status: AppointmentStatus,
    notes: Optional[str] = None,
) -> Appointment:
    """Move the execution axis; notes are stored under the writer's role."""
    appointment, role = get_for_party(session, appointment_id, actor_id)

    appointment.status = new_status
    if notes:
        if role == AccountKind.PATIENT:
            appointment.patient_notes = notes
        else:
            appointment.professional_notes = notes

    # Release or re-take the slot to match the new state
    if appointment.blocks_slot():
        appointment.slot_key = slot_key_for(appointment.professional_id, appointment.date, appointment.time)
    else:
        appointment.slot_key = None
    appointment.updated_at = datetime.utcnow()

    session.add(appointment)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise _slot_conflict()
    session.refresh(appointment)

    logger.info("Appointment status updated", appointment_id=appointment_id, status=new_status.value, actor_id=actor_id)
    return appointment


def start_call(session: Session, appointment_id: str, actor_id: str, call_type: CallType) -> CallSession:
    """
    Open a call on an approved appointment.

    If a call is already open the actor joins it instead; an appointment never
    has two open calls.
    """
    appointment, role = get_for_party(session, appointment_id, actor_id)
    if appointment.approval_status != ApprovalStatus.APPROVED or not appointment.communication_enabled:
        raise communication_not_enabled()

    call = CallCRUD.get_open_call(session, appointment.id)
    if call is None:
        call = CallSession(appointment_id=appointment.id, call_type=call_type, open_key=appointment.id)
        call.participants.append(CallParticipant(user_id=actor_id, user_kind=role))
        session.add(call)
        if call_type == CallType.VIDEO:
            appointment.meeting_link = f"{settings.FRONTEND_URL}/meeting/{appointment.id}"
            session.add(appointment)
        try:
            session.commit()
            session.refresh(call)
            logger.info("Call started", appointment_id=appointment_id, call_id=call.id, call_type=call_type.value)
            return call
        except IntegrityError:
            # A concurrent start opened the call first; join it
            session.rollback()
            call = CallCRUD.get_open_call(session, appointment.id)
            if call is None:
                raise ConflictError("Call state changed, please retry", reason="CallConflict")

    if all(p.user_id != actor_id for p in call.participants):
        call.participants.append(CallParticipant(user_id=actor_id, user_kind=role))
        session.add(call)
        session.commit()
        session.refresh(call)
        logger.info("Call joined", appointment_id=appointment_id, call_id=call.id, user_id=actor_id)
    return call


def end_call(
    session: Session,
    appointment_id: str,
    actor_id: str,
    quality: Optional[CallQuality] = None,
    duration: Optional[int] = None,
) -> CallSession:
    """Close the most recently started open call the actor participates in."""
    get_for_party(session, appointment_id, actor_id)

    call = CallCRUD.find_open_call_for(session, appointment_id, actor_id)
    if call is None:
        raise no_active_call()

    ended_at = datetime.utcnow()
    if duration is None:
        duration = max(0, int((ended_at - call.start_time).total_seconds() // 60))

    if not CallCRUD.close(session, call.id, ended_at, duration, quality or CallQuality.GOOD):
        session.rollback()
        raise no_active_call()

    for participant in call.participants:
        if participant.user_id == actor_id and participant.left_at is None:
            participant.left_at = ended_at
            session.add(participant)
    session.commit()
    session.refresh(call)

    logger.info("Call ended", appointment_id=appointment_id, call_id=call.id, duration=duration)
    return call


def list_appointments(
    session: Session,
    kind: AccountKind,
    subject_id: str,
    status: Optional[AppointmentStatus] = None,
    approval_status: Optional[ApprovalStatus] = None,
    page: int = 1,
    limit: int = 10,
) -> Tuple[List[Appointment], int]:
    if kind not in (AccountKind.PATIENT, AccountKind.PROFESSIONAL):
        raise AccessDeniedError("Only patients and professionals have appointments")
    return AppointmentCRUD.list_for_party(session, kind, subject_id, status, approval_status, page, limit)


def communication_options(appointment: Appointment) -> dict:
    approved = appointment.communication_enabled and appointment.approval_status == ApprovalStatus.APPROVED
    return {
        "chat_enabled": bool(appointment.communication_enabled and appointment.chat_thread_id),
        "call_enabled": approved,
        "video_enabled": approved,
    }
