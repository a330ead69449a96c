"""
Database seeding script for the Nutri-Vision backend.

This script creates the tables, seeds the demo operator, professional and
patient, then books a few appointments in different approval states so the
chat and call flows can be exercised locally.
"""

import sys
import os
from datetime import date, timedelta

# Add parent directory to path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlmodel import Session, select

from nutrivision import appointments, chat
from nutrivision.db import AccountCRUD, create_db_and_tables, engine, seed_database
from nutrivision.errors import ServiceError
from nutrivision.models import AccountKind, Appointment, ChatThread, Patient, Professional, SessionType


def seed_extended_data():
    """Book demo appointments between the seeded patient and professional."""

    print("🌱 Seeding demo appointments...")

    with Session(engine) as session:
        patient = AccountCRUD.get_by_email(session, AccountKind.PATIENT, "sam.rivera@nutrivision.example.com")
        professional = AccountCRUD.get_by_email(
            session, AccountKind.PROFESSIONAL, "priya.sharma@nutrivision.example.com"
        )
        if patient is None or professional is None:
            print("   ❌ Base accounts missing, run seed_database first")
            return

        base_date = date.today()
        bookings = [
            # (days ahead, time, session type, reason, decision)
            (1, "10:00", SessionType.VIDEO, "Initial consultation about meal planning", "approve"),
            (2, "14:30", SessionType.CHAT, "Follow-up on blood sugar readings", "approve"),
            (3, "09:00", SessionType.PHONE, "Questions about a new supplement", "reject"),
            (7, "16:00", SessionType.VIDEO, "Weekly progress review and adjustments", None),
        ]

        for days_ahead, time, session_type, reason, decision in bookings:
            try:
                appointment = appointments.book(
                    session,
                    patient_id=patient.id,
                    professional_id=professional.id,
                    day=base_date + timedelta(days=days_ahead),
                    time=time,
                    session_type=session_type,
                    reason=reason,
                )
                if decision == "approve":
                    appointment, thread = appointments.approve(session, appointment.id, professional.id)
                    chat.post_message(
                        session, thread, professional.id, AccountKind.PROFESSIONAL,
                        "Hello! Looking forward to our session.",
                    )
                elif decision == "reject":
                    appointments.reject(session, appointment.id, professional.id, "Schedule conflict")
                print(f"   ✅ Booked {session_type.value} session on {appointment.date} {time} ({decision or 'pending'})")
            except ServiceError as e:
                print(f"   ↳ Skipped booking on day +{days_ahead}: {e.message}")


def print_database_summary():
    """Print a summary of current database contents."""
    print("\n📋 Database Summary:")
    print("=" * 50)

    with Session(engine) as session:
        patients = session.exec(select(Patient)).all()
        professionals = session.exec(select(Professional)).all()
        appointment_rows = session.exec(select(Appointment)).all()
        threads = session.exec(select(ChatThread)).all()

        print(f"👥 Patients: {len(patients)}")
        print(f"🥗 Professionals: {len(professionals)}")
        print(f"📅 Appointments: {len(appointment_rows)}")

        approval_counts = {}
        for apt in appointment_rows:
            approval_counts[apt.approval_status.value] = approval_counts.get(apt.approval_status.value, 0) + 1
        for approval, count in approval_counts.items():
            print(f"   - {approval}: {count}")

        print(f"💬 Chat threads: {len(threads)}")


def main():
    """Main function to run database seeding."""
    print("🗄️  Nutri-Vision Database Seeding Tool")
    print("=" * 50)

    try:
        create_db_and_tables()
        print("✅ Database tables ensured")

        seed_database()
        seed_extended_data()
        print_database_summary()

        print("\n🎉 Database seeding completed successfully!")

    except Exception as e:
        print(f"❌ Error during database seeding: {e}")
        return 1

    return 0


if __name__ == "__main__":
    exit_code = main()
    sys.exit(exit_code)
