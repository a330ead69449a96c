"""
Database configuration and setup for the Nutri-Vision backend.

This module handles engine initialization, session management, and provides
CRUD operations for accounts, appointments, call sessions and chat threads.
Multi-step invariants (approval, slot ownership, open calls) are enforced by
the services on top of these helpers using unique columns and conditional
updates, so they hold across processes sharing one database.
"""

from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import delete, func, or_, update
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session, select

from .models import (
    ACCOUNT_MODELS, AccountKind, Appointment, ApprovalStatus, BLOCKING_APPROVALS,
    BLOCKING_STATUSES, CallParticipant, CallSession, ChatMessage, ChatThread,
    Operator, Patient, Professional,
)
from .observability import setup_logging
from .settings import settings

logger = setup_logging()


def build_engine(url: str, echo: bool = False):
    """Create an engine; SQLite URLs get thread-safe connect args."""
    kwargs = {"echo": echo}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


# Database configuration
DATABASE_URL = settings.DATABASE_URL
engine = build_engine(DATABASE_URL, echo=settings.DB_ECHO)


def create_db_and_tables(bind=None):
    """Create database tables if they don't exist."""
    SQLModel.metadata.create_all(bind or engine)


def get_session():
    """Get database session."""
    with Session(engine) as session:
        yield session


# CRUD Operations
class AccountCRUD:
    """CRUD operations shared by the three account collections."""

    @staticmethod
    def get(session: Session, kind: AccountKind, account_id: str):
        return session.get(ACCOUNT_MODELS[kind], account_id)

    @staticmethod
    def get_by_email(session: Session, kind: AccountKind, email: str):
        model = ACCOUNT_MODELS[kind]
        statement = select(model).where(model.email == email.strip().lower())
        return session.exec(statement).first()

    @staticmethod
    def create(session: Session, account):
        """Persist a new account. Raises IntegrityError on a duplicate email."""
        account.email = account.email.strip().lower()
        session.add(account)
        session.commit()
        session.refresh(account)
        return account

    @staticmethod
    def touch_login(session: Session, account) -> None:
        account.last_login = datetime.utcnow()
        session.add(account)
        session.commit()
        session.refresh(account)


class AppointmentCRUD:
    """CRUD operations for Appointment model."""

    @staticmethod
    def get_by_id(session: Session, appointment_id: str) -> Optional[Appointment]:
        return session.get(Appointment, appointment_id)

    @staticmethod
    def find_slot_holder(session: Session, professional_id: str, day, time: str) -> Optional[Appointment]:
        """Appointment currently blocking the professional's date+time slot, if any."""
        statement = select(Appointment).where(
            Appointment.professional_id == professional_id,
            Appointment.date == day,
            Appointment.time == time,
            Appointment.status.in_(BLOCKING_STATUSES),
            Appointment.approval_status.in_(BLOCKING_APPROVALS),
        )
        return session.exec(statement).first()

    @staticmethod
    def list_for_party(
        session: Session,
        kind: AccountKind,
        subject_id: str,
        status=None,
        approval_status=None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[Appointment], int]:
        """Appointments for a patient or professional, newest date first."""
        column = Appointment.patient_id if kind == AccountKind.PATIENT else Appointment.professional_id
        conditions = [column == subject_id]
        if status is not None:
            conditions.append(Appointment.status == status)
        if approval_status is not None:
            conditions.append(Appointment.approval_status == approval_status)

        total = session.exec(select(func.count()).select_from(Appointment).where(*conditions)).one()
        statement = (
            select(Appointment)
            .where(*conditions)
            .order_by(Appointment.date.desc(), Appointment.time.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(session.exec(statement).all()), total

    @staticmethod
    def mark_approved(session: Session, appointment_id: str, professional_id: str, thread_id: str) -> bool:
        """
        Conditionally flip a pending appointment to approved.

        Returns False when no pending row matched; the caller must roll back.
        Does not commit.
        """
        now = datetime.utcnow()
        result = session.execute(
            update(Appointment)
            .where(
                Appointment.id == appointment_id,
                Appointment.professional_id == professional_id,
                Appointment.approval_status == ApprovalStatus.PENDING,
            )
            .values(
                approval_status=ApprovalStatus.APPROVED,
                communication_enabled=True,
                approved_at=now,
                chat_thread_id=thread_id,
                updated_at=now,
            )
        )
        return result.rowcount == 1

    @staticmethod
    def mark_rejected(session: Session, appointment_id: str, professional_id: str, reason: str) -> bool:
        """Conditionally flip a pending appointment to rejected. Does not commit."""
        result = session.execute(
            update(Appointment)
            .where(
                Appointment.id == appointment_id,
                Appointment.professional_id == professional_id,
                Appointment.approval_status == ApprovalStatus.PENDING,
            )
            .values(
                approval_status=ApprovalStatus.REJECTED,
                rejection_reason=reason,
                slot_key=None,
                updated_at=datetime.utcnow(),
            )
        )
        return result.rowcount == 1

    @staticmethod
    def delete_for_account(session: Session, subject_id: str) -> int:
        """Delete every appointment (with its calls and chat) the subject is a party to. Does not commit."""
        appointment_ids = list(session.exec(
            select(Appointment.id).where(
                or_(Appointment.patient_id == subject_id, Appointment.professional_id == subject_id)
            )
        ).all())
        if not appointment_ids:
            return 0

        call_ids = select(CallSession.id).where(CallSession.appointment_id.in_(appointment_ids))
        thread_ids = select(ChatThread.id).where(ChatThread.appointment_id.in_(appointment_ids))
        session.execute(delete(CallParticipant).where(CallParticipant.call_id.in_(call_ids)))
        session.execute(delete(CallSession).where(CallSession.appointment_id.in_(appointment_ids)))
        session.execute(delete(ChatMessage).where(ChatMessage.thread_id.in_(thread_ids)))
        session.execute(delete(ChatThread).where(ChatThread.appointment_id.in_(appointment_ids)))
        session.execute(delete(Appointment).where(Appointment.id.in_(appointment_ids)))
        return len(appointment_ids)


class CallCRUD:
    """CRUD operations for call sessions embedded in an appointment's history."""

    @staticmethod
    def get_open_call(session: Session, appointment_id: str) -> Optional[CallSession]:
        statement = select(CallSession).where(
            CallSession.appointment_id == appointment_id,
            CallSession.end_time.is_(None),
        ).order_by(CallSession.start_time.desc())
        return session.exec(statement).first()

    @staticmethod
    def find_open_call_for(session: Session, appointment_id: str, user_id: str) -> Optional[CallSession]:
        """Most recently started open call in which the user participates."""
        statement = (
            select(CallSession)
            .join(CallParticipant, CallParticipant.call_id == CallSession.id)
            .where(
                CallSession.appointment_id == appointment_id,
                CallSession.end_time.is_(None),
                CallParticipant.user_id == user_id,
            )
            .order_by(CallSession.start_time.desc())
        )
        return session.exec(statement).first()

    @staticmethod
    def close(session: Session, call_id: str, ended_at: datetime, duration: int, quality) -> bool:
        """Conditionally close an open call. Does not commit."""
        result = session.execute(
            update(CallSession)
            .where(CallSession.id == call_id, CallSession.end_time.is_(None))
            .values(end_time=ended_at, duration=duration, quality=quality, open_key=None)
        )
        return result.rowcount == 1


class ChatCRUD:
    """CRUD operations for chat threads and messages."""

    @staticmethod
    def get_thread(session: Session, thread_id: str) -> Optional[ChatThread]:
        return session.get(ChatThread, thread_id)

    @staticmethod
    def get_thread_by_appointment(session: Session, appointment_id: str) -> Optional[ChatThread]:
        statement = select(ChatThread).where(ChatThread.appointment_id == appointment_id)
        return session.exec(statement).first()

    @staticmethod
    def list_threads_for(session: Session, subject_id: str) -> List[ChatThread]:
        statement = select(ChatThread).where(
            or_(ChatThread.patient_id == subject_id, ChatThread.professional_id == subject_id)
        ).order_by(ChatThread.updated_at.desc())
        return list(session.exec(statement).all())

    @staticmethod
    def count_messages(session: Session, thread_id: str) -> int:
        statement = select(func.count()).select_from(ChatMessage).where(ChatMessage.thread_id == thread_id)
        return session.exec(statement).one()

    @staticmethod
    def page_newest_first(session: Session, thread_id: str, page: int, limit: int) -> List[ChatMessage]:
        """One page of messages in newest-first persisted order."""
        statement = (
            select(ChatMessage)
            .where(ChatMessage.thread_id == thread_id)
            .order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(session.exec(statement).all())

    @staticmethod
    def mark_read(session: Session, thread_id: str, reader_id: str) -> int:
        """Flip unread messages not authored by the reader. Does not commit."""
        result = session.execute(
            update(ChatMessage)
            .where(
                ChatMessage.thread_id == thread_id,
                ChatMessage.sender_id != reader_id,
                ChatMessage.is_read.is_(False),
            )
            .values(is_read=True, read_at=datetime.utcnow())
        )
        return result.rowcount

    @staticmethod
    def unread_count(session: Session, subject_id: str) -> int:
        statement = (
            select(func.count())
            .select_from(ChatMessage)
            .join(ChatThread, ChatThread.id == ChatMessage.thread_id)
            .where(
                or_(ChatThread.patient_id == subject_id, ChatThread.professional_id == subject_id),
                ChatMessage.sender_id != subject_id,
                ChatMessage.is_read.is_(False),
            )
        )
        return session.exec(statement).one()


def seed_database(bind=None):
    """Seed the database with demo accounts for local testing."""
    from .security import hash_password

    with Session(bind or engine) as session:
        # Check if data already exists
        existing_operator = session.exec(select(Operator)).first()
        if existing_operator:
            logger.info("Database already seeded")
            return

        AccountCRUD.create(session, Operator(
            name="Platform Admin",
            email="admin@nutrivision.example.com",
            password_hash=hash_password("admin-password"),
        ))

        AccountCRUD.create(session, Professional(
            name="Dr. Priya Sharma",
            email="priya.sharma@nutrivision.example.com",
            password_hash=hash_password("professional-password"),
            phone="+15550100200",
            city="Bengaluru",
            country="India",
            qualification="MSc Clinical Nutrition",
            experience_years=8,
            specializations=["Clinical Nutrition", "Diabetes Management"],
            consultation_rate=1000,
            is_approved=True,
            approved_at=datetime.utcnow() - timedelta(days=30),
        ))

        AccountCRUD.create(session, Patient(
            name="Sam Rivera",
            email="sam.rivera@nutrivision.example.com",
            password_hash=hash_password("patient-password"),
            profile={"age": 34, "gender": "other", "heightCm": 172, "weightKg": 70},
        ))

        logger.info("Database seeded successfully")


if __name__ == "__main__":
    create_db_and_tables()
    seed_database()
