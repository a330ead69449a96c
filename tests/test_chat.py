"""
Tests for appointment-scoped chat threads
"""

from datetime import date

import pytest

from nutrivision import appointments, chat
from nutrivision.errors import AccessDeniedError, NotFoundError, StateError, ValidationError
from nutrivision.models import AccountKind, SessionType, ThreadStatus


@pytest.fixture
def conversation(db, make_patient, make_professional):
    patient, _ = make_patient()
    professional, _ = make_professional()
    appointment = appointments.book(
        db, patient.id, professional.id, date(2030, 5, 2), "15:00", SessionType.CHAT,
        "Questions about intermittent fasting",
    )
    _, thread = appointments.approve(db, appointment.id, professional.id)
    return appointment, thread, patient, professional


class TestPosting:
    """Posting messages and the realtime side effect"""

    def test_post_updates_summary_and_notifies_other_party(self, db, transport, conversation):
        _, thread, patient, professional = conversation

        message = chat.post_message(
            db, thread, patient.id, AccountKind.PATIENT, "  Is coffee allowed?  ", transport=transport
        )

        db.refresh(thread)
        assert message.content == "Is coffee allowed?"
        assert message.is_read is False
        assert thread.last_message_content == "Is coffee allowed?"
        assert thread.last_message_sender_id == patient.id
        assert thread.last_message_sender_kind == AccountKind.PATIENT

        delivered = transport.events_for_user(professional.id, "new_message")
        assert len(delivered) == 1
        assert delivered[0]["threadId"] == thread.id
        assert delivered[0]["message"]["content"] == "Is coffee allowed?"
        assert transport.events_for_user(patient.id) == []

    def test_blank_content_rejected(self, db, conversation):
        _, thread, patient, _ = conversation

        with pytest.raises(ValidationError) as exc:
            chat.post_message(db, thread, patient.id, AccountKind.PATIENT, "   \n\t ")
        assert exc.value.reason == "EmptyContent"

    def test_outsider_cannot_read_or_post(self, db, conversation, make_patient):
        _, thread, _, _ = conversation
        outsider, _ = make_patient(email="outsider@example.com")

        with pytest.raises(AccessDeniedError):
            chat.get_thread_for(db, thread.id, outsider.id)
        with pytest.raises(AccessDeniedError):
            chat.post_message(db, thread, outsider.id, AccountKind.PATIENT, "Hi")

    def test_unknown_thread(self, db, conversation):
        _, _, patient, _ = conversation

        with pytest.raises(NotFoundError) as exc:
            chat.get_thread_for(db, "missing-thread", patient.id)
        assert exc.value.reason == "ThreadNotFound"

    def test_archived_thread_rejects_posts_but_stays_readable(self, db, conversation):
        _, thread, patient, professional = conversation
        chat.post_message(db, thread, patient.id, AccountKind.PATIENT, "Before archive")

        archived = chat.archive_thread(db, thread, professional.id)

        assert archived.status == ThreadStatus.ARCHIVED
        with pytest.raises(StateError) as exc:
            chat.post_message(db, thread, patient.id, AccountKind.PATIENT, "After archive")
        assert exc.value.reason == "ThreadArchived"
        messages, total = chat.list_messages(db, thread)
        assert total == 1
        assert messages[0].content == "Before archive"


class TestListing:
    """Paging direction and appointment-scoped lookup"""

    def test_pages_are_newest_first_but_chronological_within(self, db, conversation):
        _, thread, patient, professional = conversation
        senders = [
            (patient.id, AccountKind.PATIENT),
            (professional.id, AccountKind.PROFESSIONAL),
        ]
        for n in range(1, 6):
            sender_id, kind = senders[n % 2]
            chat.post_message(db, thread, sender_id, kind, f"message {n}")

        first_page, total = chat.list_messages(db, thread, page=1, limit=2)
        second_page, _ = chat.list_messages(db, thread, page=2, limit=2)
        last_page, _ = chat.list_messages(db, thread, page=3, limit=2)

        assert total == 5
        assert [m.content for m in first_page] == ["message 4", "message 5"]
        assert [m.content for m in second_page] == ["message 2", "message 3"]
        assert [m.content for m in last_page] == ["message 1"]

    def test_pages_walked_backwards_reproduce_posting_order(self, db, conversation):
        _, thread, patient, _ = conversation
        posted = [f"M{n}" for n in range(1, 11)]
        for content in posted:
            chat.post_message(db, thread, patient.id, AccountKind.PATIENT, content)

        newest, _ = chat.list_messages(db, thread, page=1, limit=5)
        oldest, _ = chat.list_messages(db, thread, page=2, limit=5)

        assert [m.content for m in newest] == posted[5:]
        assert [m.content for m in oldest + newest] == posted

    def test_invalid_paging_rejected(self, db, conversation):
        _, thread, _, _ = conversation

        with pytest.raises(ValidationError):
            chat.list_messages(db, thread, page=0, limit=10)
        with pytest.raises(ValidationError):
            chat.list_messages(db, thread, page=1, limit=1000)

    def test_thread_by_appointment_requires_approval(self, db, make_patient, make_professional):
        patient, _ = make_patient()
        professional, _ = make_professional()
        appointment = appointments.book(
            db, patient.id, professional.id, date(2030, 5, 3), "09:00", SessionType.CHAT,
            "Pre-approval chat attempt",
        )

        with pytest.raises(StateError) as exc:
            chat.get_thread_for_appointment(db, appointment.id, patient.id)
        assert exc.value.reason == "CommunicationNotEnabled"

        _, thread = appointments.approve(db, appointment.id, professional.id)
        assert chat.get_thread_for_appointment(db, appointment.id, patient.id).id == thread.id

    def test_list_threads(self, db, conversation, make_patient):
        _, thread, patient, professional = conversation
        outsider, _ = make_patient(email="outsider@example.com")

        assert [t.id for t in chat.list_threads(db, patient.id)] == [thread.id]
        assert [t.id for t in chat.list_threads(db, professional.id)] == [thread.id]
        assert chat.list_threads(db, outsider.id) == []


class TestReadTracking:
    """Read flags only move forward and only for the other party's messages"""

    def test_mark_read_flips_only_incoming_messages(self, db, transport, conversation):
        _, thread, patient, professional = conversation
        chat.post_message(db, thread, patient.id, AccountKind.PATIENT, "One")
        chat.post_message(db, thread, patient.id, AccountKind.PATIENT, "Two")
        chat.post_message(db, thread, professional.id, AccountKind.PROFESSIONAL, "Reply")

        assert chat.unread_count(db, professional.id) == 2
        assert chat.unread_count(db, patient.id) == 1

        flipped = chat.mark_read(db, thread, professional.id, transport)

        assert flipped == 2
        assert chat.unread_count(db, professional.id) == 0
        assert chat.unread_count(db, patient.id) == 1
        notices = transport.events_for_user(patient.id, "messages_read")
        assert notices[0]["count"] == 2

        messages, _ = chat.list_messages(db, thread)
        incoming = [m for m in messages if m.sender_id == patient.id]
        assert all(m.is_read and m.read_at is not None for m in incoming)

    def test_mark_read_is_idempotent(self, db, transport, conversation):
        _, thread, patient, professional = conversation
        chat.post_message(db, thread, patient.id, AccountKind.PATIENT, "Hello")

        assert chat.mark_read(db, thread, professional.id, transport) == 1
        assert chat.mark_read(db, thread, professional.id, transport) == 0
        assert len(transport.events_for_user(patient.id, "messages_read")) == 1
