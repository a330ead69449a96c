"""
Identity and session management for the Nutri-Vision backend.

Accounts live in three collections (patients, professionals, operators).
Every operation that can touch more than one of them dispatches on the
``AccountKind`` tag carried by the session token, never on the shape of the
record. Password hashing is slow by design; the HTTP layer runs these
functions in a worker thread.
"""

from datetime import datetime
from typing import Any, Dict, Optional, Sequence, Tuple

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from .db import AccountCRUD, AppointmentCRUD
from .errors import (
    ConflictError, NotFoundError, ValidationError, account_inactive, account_rejected,
    invalid_credentials, pending_approval, subject_not_found,
)
from .models import AccountKind, Patient, Principal, Professional
from .observability import setup_logging, trace_operation
from .security import create_access_token, decode_access_token, hash_password, pwd_context, verify_password

logger = setup_logging()


def _email_taken() -> ConflictError:
    return ConflictError("An account already exists with this email", reason="EmailTaken")


def _create_account(session: Session, kind: AccountKind, account):
    if AccountCRUD.get_by_email(session, kind, account.email) is not None:
        raise _email_taken()
    try:
        return AccountCRUD.create(session, account)
    except IntegrityError:
        session.rollback()
        raise _email_taken()


def register_patient(
    session: Session, name: str, email: str, password: str, profile: Optional[Dict[str, Any]] = None
) -> Tuple[Patient, str]:
    """Create a patient account and issue its first session token."""
    patient = _create_account(session, AccountKind.PATIENT, Patient(
        name=name.strip(),
        email=email,
        password_hash=hash_password(password),
        profile=profile or {},
    ))
    logger.info("Patient registered", patient_id=patient.id)
    return patient, create_access_token(patient.id, AccountKind.PATIENT)


def register_professional(session: Session, password: str, **fields) -> Professional:
    """Create a professional account awaiting operator approval. No token is issued."""
    professional = _create_account(session, AccountKind.PROFESSIONAL, Professional(
        password_hash=hash_password(password),
        is_approved=False,
        is_rejected=False,
        **fields,
    ))
    logger.info("Professional registered", professional_id=professional.id)
    return professional


def authenticate(
    session: Session, email: str, password: str, kinds: Sequence[AccountKind]
) -> Tuple[Any, Principal, str]:
    """
    Check credentials against the given collections, in order.

    Returns ``(account, principal, token)``. Fails with ``InvalidCredentials``
    on unknown email or hash mismatch, ``AccountInactive`` when deactivated,
    and ``PendingApproval`` / ``Rejected`` for professionals not yet approved.
    """
    account, kind = None, None
    for candidate_kind in kinds:
        account = AccountCRUD.get_by_email(session, candidate_kind, email)
        if account is not None:
            kind = candidate_kind
            break

    if account is None:
        pwd_context.dummy_verify()
        logger.warning("Login failed: unknown email")
        raise invalid_credentials()

    if not verify_password(password, account.password_hash):
        logger.warning("Login failed: password mismatch", subject_id=account.id, kind=kind.value)
        raise invalid_credentials()

    if not account.is_active:
        raise account_inactive()

    if kind == AccountKind.PROFESSIONAL and not account.is_approved:
        if account.is_rejected:
            raise account_rejected()
        raise pending_approval()

    AccountCRUD.touch_login(session, account)
    principal = Principal(subject_id=account.id, kind=kind)
    logger.info("Login succeeded", subject_id=account.id, kind=kind.value)
    return account, principal, create_access_token(account.id, kind)


def verify(session: Session, token: str) -> Principal:
    """Validate a bearer token and confirm its subject still exists and is active."""
    subject_id, kind = decode_access_token(token)
    account = AccountCRUD.get(session, kind, subject_id)
    if account is None or not account.is_active:
        raise subject_not_found()
    return Principal(subject_id=subject_id, kind=kind)


def load_account(session: Session, principal: Principal):
    account = AccountCRUD.get(session, principal.kind, principal.subject_id)
    if account is None:
        raise subject_not_found()
    return account


def change_password(session: Session, principal: Principal, current_password: str, new_password: str) -> None:
    """Rehash only the new plaintext, after checking the current one."""
    account = load_account(session, principal)
    if not verify_password(current_password, account.password_hash):
        raise invalid_credentials()
    if current_password == new_password:
        raise ValidationError("New password must differ from the current password")

    account.password_hash = hash_password(new_password)
    account.updated_at = datetime.utcnow()
    session.add(account)
    session.commit()
    logger.info("Password changed", subject_id=principal.subject_id, kind=principal.kind.value)


def delete_account(session: Session, principal: Principal) -> int:
    """
    Permanently delete the account with its appointments, calls and chats.

    Returns the number of appointments purged.
    """
    account = load_account(session, principal)
    with trace_operation("delete_account", subject_id=principal.subject_id, kind=principal.kind.value):
        purged = 0
        if principal.kind in (AccountKind.PATIENT, AccountKind.PROFESSIONAL):
            purged = AppointmentCRUD.delete_for_account(session, principal.subject_id)
        session.delete(account)
        session.commit()
    return purged


def decide_professional(
    session: Session, operator: Principal, professional_id: str, approve: bool, reason: Optional[str] = None
) -> Professional:
    """Operator approval or rejection of a professional's application."""
    professional = AccountCRUD.get(session, AccountKind.PROFESSIONAL, professional_id)
    if professional is None:
        raise NotFoundError("Professional not found")

    now = datetime.utcnow()
    if approve:
        if professional.is_approved:
            raise ConflictError("Professional already approved", reason="AlreadyDecided")
        professional.is_approved = True
        professional.is_rejected = False
        professional.approved_at = now
        professional.approved_by = operator.subject_id
        professional.rejection_reason = None
    else:
        if professional.is_rejected:
            raise ConflictError("Professional already rejected", reason="AlreadyDecided")
        professional.is_rejected = True
        professional.is_approved = False
        professional.rejected_at = now
        professional.rejected_by = operator.subject_id
        professional.rejection_reason = reason

    professional.updated_at = now
    session.add(professional)
    session.commit()
    session.refresh(professional)
    logger.info(
        "Professional application decided",
        professional_id=professional_id,
        approved=approve,
        operator_id=operator.subject_id,
    )
    return professional


def set_account_active(session: Session, kind: AccountKind, account_id: str, is_active: bool):
    """Soft-enable or soft-disable a patient or professional."""
    if kind == AccountKind.OPERATOR:
        raise ValidationError("Operator accounts cannot be toggled here")
    account = AccountCRUD.get(session, kind, account_id)
    if account is None:
        raise NotFoundError("Account not found")

    account.is_active = is_active
    account.updated_at = datetime.utcnow()
    session.add(account)
    session.commit()
    session.refresh(account)
    logger.info("Account activity changed", account_id=account_id, kind=kind.value, is_active=is_active)
    return account
