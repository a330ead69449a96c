"""
Appointment-scoped chat for the Nutri-Vision backend.

Threads are created by the appointment lifecycle at approval and hold an
append-only message log. Message order is persisted order. Pages are fetched
newest-first and handed to callers oldest-first within the page.
"""

from datetime import datetime
from typing import List, Optional, Tuple

from sqlmodel import Session

from .db import AppointmentCRUD, ChatCRUD
from .errors import AccessDeniedError, NotFoundError, StateError, ValidationError, communication_not_enabled
from .models import AccountKind, ChatMessage, ChatThread, MessageType, ThreadStatus
from .observability import setup_logging
from .realtime import RealtimeTransport
from .schemas import ChatMessageRead

logger = setup_logging()

MAX_PAGE_SIZE = 100


def _thread_not_found() -> NotFoundError:
    return NotFoundError("Chat thread not found", reason="ThreadNotFound")


def create_thread(session: Session, appointment_id: str, patient_id: str, professional_id: str) -> ChatThread:
    """Create a thread for an appointment. Does not commit; the caller owns the transaction."""
    thread = ChatThread(appointment_id=appointment_id, patient_id=patient_id, professional_id=professional_id)
    session.add(thread)
    session.flush()
    return thread


def get_thread_for(session: Session, thread_id: str, requester_id: str) -> ChatThread:
    thread = ChatCRUD.get_thread(session, thread_id)
    if thread is None:
        raise _thread_not_found()
    if not thread.is_participant(requester_id):
        raise AccessDeniedError("You are not a participant in this chat")
    return thread


def get_thread_for_appointment(session: Session, appointment_id: str, requester_id: str) -> ChatThread:
    """Thread of an appointment the requester is a party to, once communication is enabled."""
    appointment = AppointmentCRUD.get_by_id(session, appointment_id)
    if appointment is None:
        raise NotFoundError("Appointment not found")
    if appointment.party_kind(requester_id) is None:
        raise AccessDeniedError("You are not a party to this appointment")
    if not appointment.communication_enabled or not appointment.chat_thread_id:
        raise communication_not_enabled()
    thread = ChatCRUD.get_thread_by_appointment(session, appointment.id)
    if thread is None:
        raise _thread_not_found()
    return thread


def post_message(
    session: Session,
    thread: ChatThread,
    sender_id: str,
    sender_kind: AccountKind,
    content: str,
    message_type: MessageType = MessageType.TEXT,
    transport: Optional[RealtimeTransport] = None,
) -> ChatMessage:
    """Append a message, refresh the thread summary and notify the other participant."""
    content = (content or "").strip()
    if not content:
        raise ValidationError("Message content is required", reason="EmptyContent")
    if not thread.is_participant(sender_id):
        raise AccessDeniedError("You are not a participant in this chat")
    if thread.status == ThreadStatus.ARCHIVED:
        raise StateError("Chat thread is archived", reason="ThreadArchived")

    message = ChatMessage(
        thread_id=thread.id,
        sender_id=sender_id,
        sender_kind=sender_kind,
        content=content,
        message_type=message_type,
    )
    session.add(message)
    session.flush()

    thread.last_message_content = content
    thread.last_message_at = message.created_at
    thread.last_message_sender_id = sender_id
    thread.last_message_sender_kind = sender_kind
    thread.updated_at = message.created_at
    session.add(thread)
    session.commit()
    session.refresh(message)

    logger.info("Chat message posted", thread_id=thread.id, message_id=message.id, sender_id=sender_id)

    if transport is not None:
        transport.emit_to_user(thread.other_participant(sender_id), "new_message", {
            "threadId": thread.id,
            "appointmentId": thread.appointment_id,
            "message": ChatMessageRead.from_model(message).model_dump(by_alias=True, mode="json"),
        })
    return message


def list_messages(session: Session, thread: ChatThread, page: int = 1, limit: int = 50) -> Tuple[List[ChatMessage], int]:
    """
    One page of the thread, chronological within the page.

    Page 1 holds the newest ``limit`` messages, so reading pages from the
    highest number down to 1 yields the whole thread in posting order.
    Returns ``(messages, total)``.
    """
    if page < 1 or limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError(f"page must be >= 1 and limit between 1 and {MAX_PAGE_SIZE}")
    newest_first = ChatCRUD.page_newest_first(session, thread.id, page, limit)
    total = ChatCRUD.count_messages(session, thread.id)
    return list(reversed(newest_first)), total


def mark_read(
    session: Session, thread: ChatThread, reader_id: str, transport: Optional[RealtimeTransport] = None
) -> int:
    """Mark the other participant's messages read. Never un-reads."""
    if not thread.is_participant(reader_id):
        raise AccessDeniedError("You are not a participant in this chat")
    count = ChatCRUD.mark_read(session, thread.id, reader_id)
    session.commit()

    if count and transport is not None:
        transport.emit_to_user(thread.other_participant(reader_id), "messages_read", {
            "threadId": thread.id,
            "readerId": reader_id,
            "count": count,
            "timestamp": datetime.utcnow().isoformat(),
        })
    return count


def list_threads(session: Session, requester_id: str) -> List[ChatThread]:
    return ChatCRUD.list_threads_for(session, requester_id)


def unread_count(session: Session, requester_id: str) -> int:
    return ChatCRUD.unread_count(session, requester_id)


def archive_thread(session: Session, thread: ChatThread, requester_id: str) -> ChatThread:
    """Soft-delete: the thread and its messages stay readable."""
    if not thread.is_participant(requester_id):
        raise AccessDeniedError("You are not a participant in this chat")
    if thread.status != ThreadStatus.ARCHIVED:
        thread.status = ThreadStatus.ARCHIVED
        thread.updated_at = datetime.utcnow()
        session.add(thread)
        session.commit()
        session.refresh(thread)
        logger.info("Chat thread archived", thread_id=thread.id, requester_id=requester_id)
    return thread
