"""
FastAPI main application for the Nutri-Vision backend.

This module provides the REST API for accounts, appointment booking and
approval, appointment-scoped chat and call bookkeeping, plus the WebSocket
endpoint carrying realtime chat events and WebRTC signaling.
"""

import asyncio
import math
import time
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import List, Optional

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

from fastapi import Depends, FastAPI, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from . import __version__, appointments, chat, identity
from .db import AppointmentCRUD, create_db_and_tables, engine, get_session, seed_database
from .errors import AccessDeniedError, AuthenticationError, ServiceError, UpstreamError
from .models import AccountKind, ApprovalStatus, AppointmentStatus, CallType, ChatMessage, ChatThread, Principal
from .observability import get_observability_summary, log_request, setup_logging
from .realtime import ConnectionManager, RealtimeTransport
from .schemas import (
    AccountRead, AccountResponse, AccountStatusRequest, ActionResult, AppointmentDetailsResponse,
    AppointmentListResponse, AppointmentRead, AppointmentResponse, AuthResponse, BookAppointmentRequest,
    CallSessionRead, CallSessionResponse, ChangePasswordRequest, ChatMessageRead, ChatThreadRead,
    CommunicationOptions, EndCallRequest, LoginRequest, MessagePage, MessageResponse, Pagination,
    PostMessageRequest, RegisterPatientRequest, RegisterProfessionalRequest, RejectRequest,
    StartCallRequest, ThreadListResponse, UnreadCountResponse, UpdateStatusRequest,
)
from .security import rate_limiter
from .settings import settings
from .signaling import SignalingServer, run_room_sweeper

# Setup structured logging
logger = setup_logging()


def _call_allowed(caller_id: str, appointment_id: str, recipient_id: str) -> bool:
    with Session(engine) as session:
        appointment = AppointmentCRUD.get_by_id(session, appointment_id)
        if appointment is None:
            return False
        parties = {appointment.patient_id, appointment.professional_id}
        return (
            caller_id in parties
            and recipient_id in parties
            and caller_id != recipient_id
            and appointment.communication_enabled
            and appointment.approval_status == ApprovalStatus.APPROVED
        )


async def appointment_call_guard(caller_id: str, appointment_id: str, recipient_id: str) -> bool:
    """Calls ring only between the two parties of an approved appointment."""
    return await run_in_threadpool(_call_allowed, caller_id, appointment_id, recipient_id)


# Global realtime transport and signaling relay (in-process)
connection_manager = ConnectionManager()
signaling_server = SignalingServer(connection_manager, call_guard=appointment_call_guard)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting Nutri-Vision backend", environment=settings.ENVIRONMENT, version=__version__)
    create_db_and_tables()
    if settings.SEED_DEMO_DATA:
        seed_database()
        logger.info("Database initialized and seeded")

    sweeper = asyncio.create_task(run_room_sweeper(
        signaling_server,
        settings.ROOM_SWEEP_INTERVAL_SECONDS,
        timedelta(hours=settings.ROOM_MAX_EMPTY_AGE_HOURS),
    ))

    yield

    # Shutdown
    sweeper.cancel()
    try:
        await sweeper
    except asyncio.CancelledError:
        pass
    logger.info("Shutting down Nutri-Vision backend")


# FastAPI application
app = FastAPI(
    title="Nutri-Vision API",
    description="Booking, chat and call signaling between patients and nutrition professionals",
    version=__version__,
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["*"],
)


@app.middleware("http")
async def rate_limit_and_log(request: Request, call_next):
    """Apply the per-client rate limit, then time and log the request."""
    start_time = time.time()
    client = request.client.host if request.client else "unknown"

    if request.url.path != "/health":
        allowed, message = rate_limiter.is_allowed(client)
        if not allowed:
            log_request(request.method, request.url.path, 429, int((time.time() - start_time) * 1000), client=client)
            return JSONResponse(
                status_code=429,
                content={"success": False, "reason": "RateLimited", "message": message},
            )

    response = await call_next(request)

    route = request.scope.get("route")
    path = getattr(route, "path", request.url.path)
    log_request(request.method, path, response.status_code, int((time.time() - start_time) * 1000), client=client)
    return response


# Error handlers
@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.error("Service failure", reason=exc.reason, path=request.url.path, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {
            "field": ".".join(str(part) for part in error.get("loc", ()) if part != "body"),
            "message": error.get("msg"),
        }
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"success": False, "reason": "ValidationError", "message": "Validation failed", "errors": errors},
    )


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error("Record store failure", path=request.url.path, error=str(exc), exc_info=True)
    return JSONResponse(status_code=503, content=UpstreamError("Service temporarily unavailable").to_dict())


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled error", path=request.url.path, error=str(exc), exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "reason": "InternalError", "message": "Internal server error"},
    )


# Dependencies
bearer_scheme = HTTPBearer(auto_error=False)


def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_session),
) -> Principal:
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Access token required", reason="MissingToken")
    return identity.verify(db, credentials.credentials)


def require_kind(*kinds: AccountKind):
    """Dependency factory restricting an endpoint to the given account kinds."""
    allowed = ", ".join(kind.value for kind in kinds)

    def dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.kind not in kinds:
            raise AccessDeniedError(f"Access denied: {allowed} account required")
        return principal

    return dependency


require_patient = require_kind(AccountKind.PATIENT)
require_professional = require_kind(AccountKind.PROFESSIONAL)
require_operator = require_kind(AccountKind.OPERATOR)
require_party = require_kind(AccountKind.PATIENT, AccountKind.PROFESSIONAL)


def get_transport() -> RealtimeTransport:
    return connection_manager


# Response helpers
def _pagination(total: int, page: int, limit: int) -> Pagination:
    return Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit) if total else 0)


def _call_response(call, message: str) -> CallSessionResponse:
    meeting_link = call.appointment.meeting_link if call.call_type == CallType.VIDEO else None
    return CallSessionResponse(message=message, call_session=CallSessionRead.from_model(call, meeting_link))


def _message_page(thread: ChatThread, messages: List[ChatMessage], total: int, page: int, limit: int) -> MessagePage:
    return MessagePage(
        thread=ChatThreadRead.from_model(thread),
        messages=[ChatMessageRead.from_model(m) for m in messages],
        page=page,
        limit=limit,
        total=total,
        has_more=page * limit < total,
    )


# Operational endpoints
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "timestamp": datetime.utcnow().isoformat()}


@app.get("/api/status")
async def api_status():
    """API status with request metrics and realtime connection counts."""
    return {
        "message": "Nutri-Vision API",
        "version": __version__,
        "status": "running",
        "environment": settings.ENVIRONMENT,
        "timestamp": datetime.utcnow().isoformat(),
        "observability": get_observability_summary(),
        "realtime": connection_manager.get_stats(),
    }


@app.get("/api/webrtc/stats")
async def webrtc_stats():
    """Signaling room statistics."""
    return {"success": True, **signaling_server.get_all_rooms_stats()}


# Identity endpoints. Plain ``def`` so password hashing runs in the threadpool.
@app.post("/auth/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
def register_patient(request: RegisterPatientRequest, db: Session = Depends(get_session)):
    profile = request.profile.model_dump(by_alias=True, exclude_none=True) if request.profile else None
    patient, token = identity.register_patient(db, request.name, request.email, request.password, profile)
    return AuthResponse(
        message="User registered successfully",
        token=token,
        account=AccountRead.from_account(patient, AccountKind.PATIENT),
    )


@app.post("/auth/login", response_model=AuthResponse)
def login(request: LoginRequest, db: Session = Depends(get_session)):
    account, principal, token = identity.authenticate(
        db, request.email, request.password, (AccountKind.PATIENT, AccountKind.OPERATOR)
    )
    return AuthResponse(
        message="Login successful",
        token=token,
        account=AccountRead.from_account(account, principal.kind),
    )


@app.get("/auth/verify", response_model=AccountResponse)
def verify_token(principal: Principal = Depends(get_current_principal), db: Session = Depends(get_session)):
    account = identity.load_account(db, principal)
    return AccountResponse(message="Token is valid", account=AccountRead.from_account(account, principal.kind))


@app.put("/auth/password", response_model=ActionResult)
def change_password(
    request: ChangePasswordRequest,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_session),
):
    identity.change_password(db, principal, request.current_password, request.new_password)
    return ActionResult(message="Password changed successfully")


@app.delete("/auth/account", response_model=ActionResult)
def delete_account(principal: Principal = Depends(get_current_principal), db: Session = Depends(get_session)):
    purged = identity.delete_account(db, principal)
    return ActionResult(message="Account deleted successfully", count=purged)


@app.post("/professional/auth/register", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
def register_professional(request: RegisterProfessionalRequest, db: Session = Depends(get_session)):
    professional = identity.register_professional(db, **request.model_dump())
    return AccountResponse(
        message="Registration submitted. Your account is pending admin approval.",
        account=AccountRead.from_account(professional, AccountKind.PROFESSIONAL),
    )


@app.post("/professional/auth/login", response_model=AuthResponse)
def professional_login(request: LoginRequest, db: Session = Depends(get_session)):
    account, principal, token = identity.authenticate(
        db, request.email, request.password, (AccountKind.PROFESSIONAL,)
    )
    return AuthResponse(
        message="Login successful",
        token=token,
        account=AccountRead.from_account(account, principal.kind),
    )


# Operator endpoints
@app.put("/admin/professionals/{professional_id}/approve", response_model=AccountResponse)
async def approve_professional(
    professional_id: str,
    operator: Principal = Depends(require_operator),
    db: Session = Depends(get_session),
):
    professional = identity.decide_professional(db, operator, professional_id, approve=True)
    return AccountResponse(
        message="Professional approved",
        account=AccountRead.from_account(professional, AccountKind.PROFESSIONAL),
    )


@app.put("/admin/professionals/{professional_id}/reject", response_model=AccountResponse)
async def reject_professional(
    professional_id: str,
    request: RejectRequest,
    operator: Principal = Depends(require_operator),
    db: Session = Depends(get_session),
):
    professional = identity.decide_professional(db, operator, professional_id, approve=False, reason=request.reason)
    return AccountResponse(
        message="Professional rejected",
        account=AccountRead.from_account(professional, AccountKind.PROFESSIONAL),
    )


@app.put("/admin/accounts/{kind}/{account_id}/active", response_model=AccountResponse)
async def set_account_active(
    kind: AccountKind,
    account_id: str,
    request: AccountStatusRequest,
    operator: Principal = Depends(require_operator),
    db: Session = Depends(get_session),
):
    account = identity.set_account_active(db, kind, account_id, request.is_active)
    return AccountResponse(
        message="Account activated" if request.is_active else "Account deactivated",
        account=AccountRead.from_account(account, kind),
    )


# Appointment endpoints
@app.post("/appointments/book", response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
async def book_appointment(
    request: BookAppointmentRequest,
    principal: Principal = Depends(require_patient),
    db: Session = Depends(get_session),
):
    appointment = appointments.book(
        db,
        patient_id=principal.subject_id,
        professional_id=request.professional_id,
        day=request.date,
        time=request.time,
        session_type=request.session_type,
        reason=request.reason,
        duration=request.duration,
        notes=request.notes,
    )
    return AppointmentResponse(
        message="Appointment booked successfully",
        appointment=AppointmentRead.from_model(appointment),
    )


def _list_appointments(db, principal, status_filter, approval_filter, page, limit) -> AppointmentListResponse:
    items, total = appointments.list_appointments(
        db, principal.kind, principal.subject_id, status_filter, approval_filter, page, limit
    )
    return AppointmentListResponse(
        appointments=[AppointmentRead.from_model(a) for a in items],
        pagination=_pagination(total, page, limit),
    )


@app.get("/appointments/patient", response_model=AppointmentListResponse)
async def list_patient_appointments(
    status_filter: Optional[AppointmentStatus] = Query(default=None, alias="status"),
    approval_filter: Optional[ApprovalStatus] = Query(default=None, alias="approvalStatus"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    principal: Principal = Depends(require_patient),
    db: Session = Depends(get_session),
):
    return _list_appointments(db, principal, status_filter, approval_filter, page, limit)


@app.get("/appointments/professional", response_model=AppointmentListResponse)
async def list_professional_appointments(
    status_filter: Optional[AppointmentStatus] = Query(default=None, alias="status"),
    approval_filter: Optional[ApprovalStatus] = Query(default=None, alias="approvalStatus"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    principal: Principal = Depends(require_professional),
    db: Session = Depends(get_session),
):
    return _list_appointments(db, principal, status_filter, approval_filter, page, limit)


@app.get("/appointments/{appointment_id}/details", response_model=AppointmentDetailsResponse)
async def appointment_details(
    appointment_id: str,
    principal: Principal = Depends(require_party),
    db: Session = Depends(get_session),
):
    appointment, _ = appointments.get_for_party(db, appointment_id, principal.subject_id)
    return AppointmentDetailsResponse(
        appointment=AppointmentRead.from_model(appointment),
        communication_options=CommunicationOptions(**appointments.communication_options(appointment)),
    )


@app.put("/appointments/{appointment_id}/approve", response_model=AppointmentResponse)
async def approve_appointment(
    appointment_id: str,
    principal: Principal = Depends(require_professional),
    db: Session = Depends(get_session),
    transport: RealtimeTransport = Depends(get_transport),
):
    appointment, thread = appointments.approve(db, appointment_id, principal.subject_id)
    transport.emit_to_user(appointment.patient_id, "appointment_approved", {
        "appointmentId": appointment.id,
        "chatThreadId": thread.id,
        "professionalId": appointment.professional_id,
    })
    return AppointmentResponse(
        message="Appointment approved. Chat and calls are now enabled.",
        appointment=AppointmentRead.from_model(appointment),
        chat_thread_id=thread.id,
    )


@app.put("/appointments/{appointment_id}/reject", response_model=AppointmentResponse)
async def reject_appointment(
    appointment_id: str,
    request: RejectRequest,
    principal: Principal = Depends(require_professional),
    db: Session = Depends(get_session),
    transport: RealtimeTransport = Depends(get_transport),
):
    appointment = appointments.reject(db, appointment_id, principal.subject_id, request.reason)
    transport.emit_to_user(appointment.patient_id, "appointment_rejected", {
        "appointmentId": appointment.id,
        "reason": appointment.rejection_reason,
    })
    return AppointmentResponse(message="Appointment rejected", appointment=AppointmentRead.from_model(appointment))


@app.put("/appointments/{appointment_id}/status", response_model=AppointmentResponse)
async def update_appointment_status(
    appointment_id: str,
    request: UpdateStatusRequest,
    principal: Principal = Depends(require_party),
    db: Session = Depends(get_session),
):
    appointment = appointments.update_status(db, appointment_id, principal.subject_id, request.status, request.notes)
    return AppointmentResponse(
        message="Appointment status updated",
        appointment=AppointmentRead.from_model(appointment),
    )


@app.post("/appointments/{appointment_id}/call/start", response_model=CallSessionResponse)
async def start_call(
    appointment_id: str,
    request: StartCallRequest,
    principal: Principal = Depends(require_party),
    db: Session = Depends(get_session),
):
    call = appointments.start_call(db, appointment_id, principal.subject_id, request.call_type)
    return _call_response(call, "Call session started")


@app.put("/appointments/{appointment_id}/call/end", response_model=CallSessionResponse)
async def end_call(
    appointment_id: str,
    request: EndCallRequest,
    principal: Principal = Depends(require_party),
    db: Session = Depends(get_session),
):
    call = appointments.end_call(db, appointment_id, principal.subject_id, request.quality, request.duration)
    return _call_response(call, "Call session ended")


# Chat endpoints
@app.get("/chat/threads", response_model=ThreadListResponse)
async def list_threads(principal: Principal = Depends(require_party), db: Session = Depends(get_session)):
    threads = chat.list_threads(db, principal.subject_id)
    return ThreadListResponse(threads=[ChatThreadRead.from_model(t) for t in threads], count=len(threads))


@app.get("/chat/unread-count", response_model=UnreadCountResponse)
async def unread_count(principal: Principal = Depends(require_party), db: Session = Depends(get_session)):
    return UnreadCountResponse(unread_count=chat.unread_count(db, principal.subject_id))


@app.get("/chat/appointment/{appointment_id}/messages", response_model=MessagePage)
async def list_appointment_messages(
    appointment_id: str,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=100),
    principal: Principal = Depends(require_party),
    db: Session = Depends(get_session),
):
    thread = chat.get_thread_for_appointment(db, appointment_id, principal.subject_id)
    messages, total = chat.list_messages(db, thread, page, limit)
    return _message_page(thread, messages, total, page, limit)


@app.post(
    "/chat/appointment/{appointment_id}/message",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def post_appointment_message(
    appointment_id: str,
    request: PostMessageRequest,
    principal: Principal = Depends(require_party),
    db: Session = Depends(get_session),
    transport: RealtimeTransport = Depends(get_transport),
):
    thread = chat.get_thread_for_appointment(db, appointment_id, principal.subject_id)
    message = chat.post_message(
        db, thread, principal.subject_id, principal.kind, request.content, request.message_type, transport
    )
    return MessageResponse(message="Message sent", message_data=ChatMessageRead.from_model(message))


@app.get("/chat/{thread_id}/messages", response_model=MessagePage)
async def list_thread_messages(
    thread_id: str,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=100),
    principal: Principal = Depends(require_party),
    db: Session = Depends(get_session),
):
    thread = chat.get_thread_for(db, thread_id, principal.subject_id)
    messages, total = chat.list_messages(db, thread, page, limit)
    return _message_page(thread, messages, total, page, limit)


@app.post("/chat/{thread_id}/message", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def post_thread_message(
    thread_id: str,
    request: PostMessageRequest,
    principal: Principal = Depends(require_party),
    db: Session = Depends(get_session),
    transport: RealtimeTransport = Depends(get_transport),
):
    thread = chat.get_thread_for(db, thread_id, principal.subject_id)
    message = chat.post_message(
        db, thread, principal.subject_id, principal.kind, request.content, request.message_type, transport
    )
    return MessageResponse(message="Message sent", message_data=ChatMessageRead.from_model(message))


@app.put("/chat/{thread_id}/read", response_model=ActionResult)
async def mark_thread_read(
    thread_id: str,
    principal: Principal = Depends(require_party),
    db: Session = Depends(get_session),
    transport: RealtimeTransport = Depends(get_transport),
):
    thread = chat.get_thread_for(db, thread_id, principal.subject_id)
    count = chat.mark_read(db, thread, principal.subject_id, transport)
    return ActionResult(message="Messages marked as read", count=count)


@app.delete("/chat/{thread_id}", response_model=ActionResult)
async def archive_thread(
    thread_id: str,
    principal: Principal = Depends(require_party),
    db: Session = Depends(get_session),
):
    thread = chat.get_thread_for(db, thread_id, principal.subject_id)
    chat.archive_thread(db, thread, principal.subject_id)
    return ActionResult(message="Chat archived")


# Realtime endpoint
@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = None):
    """Authenticated realtime channel: chat events and WebRTC signaling."""
    principal = None
    if token:
        try:
            with Session(engine) as session:
                principal = identity.verify(session, token)
        except ServiceError as e:
            logger.warning("WebSocket authentication failed", reason=e.reason)
    if principal is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    connection_id = await connection_manager.connect(websocket, principal.subject_id)
    try:
        while True:
            raw = await websocket.receive_text()
            signaling_server.handle_message(connection_id, principal.subject_id, raw)
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error("WebSocket error", connection_id=connection_id, error=str(e))
    finally:
        signaling_server.handle_disconnect(connection_id)
        await connection_manager.disconnect(connection_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "nutrivision.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
