"""
Mediation Service API
=====================

FastAPI surface for the dispute-mediation workflow.

Auth:
- POST /auth/register, POST /auth/login, GET /auth/me

Cases:
- POST  /cases                       - File a case (verified users)
- GET   /cases                       - Cases visible to the caller
- GET   /cases/{id}                  - Case snapshot
- GET   /cases/{id}/timeline         - CaseUpdate log
- POST  /cases/{id}/contact          - Contact the opposite party (admin)
- POST  /cases/{id}/response         - Record accept/reject (admin)
- POST  /cases/{id}/panel            - Form the panel (admin)
- GET   /cases/{id}/panel            - Read the panel
- POST  /cases/{id}/mediation        - Start mediation (admin)
- POST  /cases/{id}/resolution       - Resolve (admin)
- PATCH /cases/{id}/status           - Generic move (admin / panel member)
- POST  /cases/{id}/agreement        - Draft the agreement
- GET   /cases/{id}/agreement        - Read the case's agreement

Agreements:
- GET /agreements/{id}, PATCH /agreements/{id}
- POST /agreements/{id}/sign, POST /agreements/{id}/execute

Admin:
- GET /admin/stats, GET /admin/panel-candidates, PATCH /admin/users/{id}/verify

Notifications:
- GET /notifications, PATCH /notifications/{id}/read, PATCH /notifications/read-all

Realtime:
- WS /ws?token=... (or ?user_id=... when WS_ALLOW_USER_ID_PARAM is on)

Run with:
    uvicorn mediation_service.api:app --host 0.0.0.0 --port 8000
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from .agreements import AgreementConsensusEngine
from .auth import (
    AuthContext, MAX_PASSWORD_BYTES, create_access_token, decode_token, get_auth_service,
    is_password_too_long,
)
from .config import get_settings
from .db.models import (
    Agreement, Case, CaseStatus, CaseType, CaseUpdate, Notification, Panel, PanelRole, User,
)
from .db.session import get_db, get_db_session, init_db
from .errors import MediationError, Unavailable
from .lifecycle import CaseStateMachine
from .notifications import NotificationFanout, NotificationService
from .panels import PanelFormationService
from . import policy
from .realtime import (
    ADMIN_TOPIC, EVENT_MEDIATION_MESSAGE, EVENT_USER_JOINED_SESSION, EVENT_USER_LEFT_SESSION, EVENT_USER_TYPING,
    RealtimeChannel, Subscription, build_message, case_topic, get_realtime_channel, mediation_topic,
    reset_realtime_channel, user_topic,
)
from .schemas import (
    ContactRequest, CreateAgreementRequest, EditAgreementRequest, FileCaseRequest, FormPanelRequest,
    HealthResponse, LoginRequest, RegisterRequest, ResolveRequest, ResponseRequest,
    StartMediationRequest, StatusUpdateRequest, TokenResponse, VerifyUserRequest,
)

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# =============================================================================
# FastAPI App
# =============================================================================

app = FastAPI(
    title="Mediation Service",
    description="Dispute-mediation case lifecycle, expert panels and settlement agreements",
    version=get_settings().service_version,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(MediationError)
async def mediation_error_handler(request: Request, exc: MediationError):
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.code}: {exc.reason}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(OperationalError)
@app.exception_handler(PoolTimeoutError)
async def storage_error_handler(request: Request, exc: Exception):
    """Storage failures outside CaseStateMachine.run surface as the same retryable error."""
    logger.error(f"{request.method} {request.url.path}: storage unavailable: {exc}")
    error = Unavailable()
    return JSONResponse(status_code=error.http_status, content=error.to_dict())


# =============================================================================
# Dependencies
# =============================================================================

def get_db_dependency():
    """Get database session for FastAPI dependency injection"""
    db = next(get_db())
    try:
        yield db
    finally:
        db.close()


def get_channel() -> RealtimeChannel:
    return get_realtime_channel()


def get_fanout(channel: RealtimeChannel = Depends(get_channel)) -> NotificationFanout:
    return NotificationFanout(channel=channel)


def get_case_machine(
    db: Session = Depends(get_db_dependency),
    fanout: NotificationFanout = Depends(get_fanout),
    channel: RealtimeChannel = Depends(get_channel),
) -> CaseStateMachine:
    return CaseStateMachine(db, fanout=fanout, channel=channel)


def get_panel_service(
    db: Session = Depends(get_db_dependency),
    cases: CaseStateMachine = Depends(get_case_machine),
) -> PanelFormationService:
    return PanelFormationService(db, cases)


def get_agreement_engine(
    db: Session = Depends(get_db_dependency),
    cases: CaseStateMachine = Depends(get_case_machine),
) -> AgreementConsensusEngine:
    return AgreementConsensusEngine(db, cases)


def get_notification_service(
    db: Session = Depends(get_db_dependency),
    fanout: NotificationFanout = Depends(get_fanout),
) -> NotificationService:
    return NotificationService(db, fanout=fanout)


def _user_id_from_token(token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    payload = decode_token(token)
    if payload and payload.get("type") == "access":
        return payload.get("sub")
    return None


def get_current_user(
    authorization: Optional[str] = Header(None, alias="Authorization"),
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    db: Session = Depends(get_db_dependency),
) -> AuthContext:
    """
    Resolve the caller from either:
    - `Authorization: Bearer <jwt>` (preferred when present)
    - `X-User-Id` (trusted-gateway fallback)
    """
    token_user_id = None
    if authorization and authorization.lower().startswith("bearer "):
        token_user_id = _user_id_from_token(authorization.split(" ", 1)[1].strip())

    effective_user_id = token_user_id or x_user_id
    if not effective_user_id:
        raise HTTPException(status_code=401, detail="Authentication required")

    auth = get_auth_service(db).get_auth_context(effective_user_id)
    if not auth:
        raise HTTPException(status_code=401, detail="User not found or inactive")
    return auth


# =============================================================================
# Serialization
# =============================================================================

def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def user_to_dict(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "phone": user.phone,
        "role": user.role.value,
        "is_verified": user.is_verified,
        "is_active": user.is_active,
        "created_at": _iso(user.created_at),
    }


def case_to_dict(case: Case) -> Dict[str, Any]:
    party = case.opposite_party
    return {
        "id": case.id,
        "case_type": case.case_type.value,
        "issue_description": case.issue_description,
        "status": case.status.value,
        "is_court_pending": case.is_court_pending,
        "case_number": case.case_number,
        "fir_number": case.fir_number,
        "court_police_station": case.court_police_station,
        "plaintiff_id": case.plaintiff_id,
        "defendant_id": case.defendant_id,
        "opposite_party": {
            "name": party.name,
            "email": party.email,
            "phone": party.phone,
            "address": party.address,
        } if party else None,
        "mediation_start": _iso(case.mediation_start),
        "mediation_end": _iso(case.mediation_end),
        "resolution": case.resolution,
        "created_at": _iso(case.created_at),
        "updated_at": _iso(case.updated_at),
    }


def update_to_dict(update: CaseUpdate) -> Dict[str, Any]:
    return {
        "id": update.id,
        "case_id": update.case_id,
        "status": update.status.value,
        "description": update.description,
        "created_by_user_id": update.created_by_user_id,
        "created_at": _iso(update.created_at),
    }


def panel_to_dict(panel: Panel) -> Dict[str, Any]:
    return {
        "id": panel.id,
        "case_id": panel.case_id,
        "created_by_user_id": panel.created_by_user_id,
        "created_at": _iso(panel.created_at),
        "members": [
            {"user_id": m.user_id, "role": m.role.value, "added_at": _iso(m.added_at)}
            for m in sorted(panel.members, key=lambda m: (m.role.value, m.user_id))
        ],
    }


def agreement_to_dict(agreement: Agreement) -> Dict[str, Any]:
    return {
        "id": agreement.id,
        "case_id": agreement.case_id,
        "content": agreement.content,
        "status": agreement.status.value,
        "signature_count": agreement.signature_count,
        "created_by_user_id": agreement.created_by_user_id,
        "created_at": _iso(agreement.created_at),
        "updated_at": _iso(agreement.updated_at),
        "signed_at": _iso(agreement.signed_at),
        "executed_at": _iso(agreement.executed_at),
        "signatures": [
            {"user_id": s.user_id, "signed_at": _iso(s.signed_at)}
            for s in agreement.signatures
        ],
    }


def notification_to_dict(row: Notification) -> Dict[str, Any]:
    return {
        "id": row.id,
        "category": row.category.value,
        "title": row.title,
        "message": row.message,
        "is_read": row.is_read,
        "case_id": row.case_id,
        "created_at": _iso(row.created_at),
    }


# =============================================================================
# Auth
# =============================================================================

@app.post("/auth/register", tags=["Auth"], response_model=TokenResponse, status_code=201)
def register(request: RegisterRequest, db: Session = Depends(get_db_dependency)):
    """Register a regular account. It starts unverified."""
    if is_password_too_long(request.password):
        raise HTTPException(status_code=400, detail=f"Password too long (max {MAX_PASSWORD_BYTES} bytes)")

    existing = db.query(User).filter(User.email == request.email).first()
    if existing:
        raise HTTPException(status_code=400, detail="Email already registered")

    user = get_auth_service(db).register_user(request.email, request.name, request.password, request.phone)
    token = create_access_token({"sub": user.id, "email": user.email})
    return TokenResponse(access_token=token, user_id=user.id)


@app.post("/auth/login", tags=["Auth"], response_model=TokenResponse)
def login(request: LoginRequest, db: Session = Depends(get_db_dependency)):
    """Login with email and password. Returns a JWT access token."""
    if is_password_too_long(request.password):
        raise HTTPException(status_code=400, detail=f"Password too long (max {MAX_PASSWORD_BYTES} bytes)")

    auth = get_auth_service(db).authenticate_user(request.email, request.password)
    if not auth:
        raise HTTPException(status_code=401, detail="Invalid email or password")

    token = create_access_token({"sub": auth.user_id, "email": auth.email})
    return TokenResponse(access_token=token, user_id=auth.user_id)


@app.get("/auth/me", tags=["Auth"])
def me(auth: AuthContext = Depends(get_current_user), db: Session = Depends(get_db_dependency)):
    return {"user": user_to_dict(db.get(User, auth.user_id))}


# =============================================================================
# Cases
# =============================================================================

@app.post("/cases", tags=["Cases"], status_code=201)
def file_case(
    request: FileCaseRequest,
    auth: AuthContext = Depends(get_current_user),
    cases: CaseStateMachine = Depends(get_case_machine),
):
    case = cases.file_case(
        auth,
        case_type=request.case_type,
        issue_description=request.issue_description,
        opposite_party=request.opposite_party.model_dump(),
        is_court_pending=request.is_court_pending,
        case_number=request.case_number,
        fir_number=request.fir_number,
        court_police_station=request.court_police_station,
    )
    return {"case": case_to_dict(case)}


@app.get("/cases", tags=["Cases"])
def list_cases(
    status: Optional[CaseStatus] = None,
    case_type: Optional[CaseType] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    auth: AuthContext = Depends(get_current_user),
    cases: CaseStateMachine = Depends(get_case_machine),
):
    result = cases.list_cases_for(auth, status=status, case_type=case_type, page=page, limit=limit)
    result["cases"] = [case_to_dict(c) for c in result["cases"]]
    return result


@app.get("/cases/{case_id}", tags=["Cases"])
def get_case(
    case_id: str,
    auth: AuthContext = Depends(get_current_user),
    cases: CaseStateMachine = Depends(get_case_machine),
):
    case = cases.get_case(case_id, auth)
    return {"case": case_to_dict(case)}


@app.get("/cases/{case_id}/timeline", tags=["Cases"])
def case_timeline(
    case_id: str,
    auth: AuthContext = Depends(get_current_user),
    cases: CaseStateMachine = Depends(get_case_machine),
):
    return {"updates": [update_to_dict(u) for u in cases.timeline(case_id, auth)]}


@app.post("/cases/{case_id}/contact", tags=["Cases"])
def contact_opposite_party(
    case_id: str,
    request: ContactRequest = ContactRequest(),
    auth: AuthContext = Depends(get_current_user),
    cases: CaseStateMachine = Depends(get_case_machine),
):
    case = cases.contact_opposite_party(case_id, auth, request.message)
    return {"case": case_to_dict(case)}


@app.post("/cases/{case_id}/response", tags=["Cases"])
def record_response(
    case_id: str,
    request: ResponseRequest,
    auth: AuthContext = Depends(get_current_user),
    cases: CaseStateMachine = Depends(get_case_machine),
):
    case = cases.record_opposite_party_response(
        case_id, auth, request.response,
        defendant_id=request.defendant_id,
        description=request.description,
    )
    return {"case": case_to_dict(case)}


@app.post("/cases/{case_id}/panel", tags=["Panels"], status_code=201)
def form_panel(
    case_id: str,
    request: FormPanelRequest,
    auth: AuthContext = Depends(get_current_user),
    panels: PanelFormationService = Depends(get_panel_service),
):
    panel = panels.form_panel(case_id, auth, [(m.user_id, m.role) for m in request.members])
    return {"panel": panel_to_dict(panel)}


@app.get("/cases/{case_id}/panel", tags=["Panels"])
def get_panel(
    case_id: str,
    auth: AuthContext = Depends(get_current_user),
    panels: PanelFormationService = Depends(get_panel_service),
):
    return {"panel": panel_to_dict(panels.get_panel(case_id, auth))}


@app.post("/cases/{case_id}/mediation", tags=["Cases"])
def start_mediation(
    case_id: str,
    request: StartMediationRequest = StartMediationRequest(),
    auth: AuthContext = Depends(get_current_user),
    cases: CaseStateMachine = Depends(get_case_machine),
):
    case = cases.start_mediation(case_id, auth, request.scheduled_at, request.description)
    return {"case": case_to_dict(case)}


@app.post("/cases/{case_id}/resolution", tags=["Cases"])
def resolve_case(
    case_id: str,
    request: ResolveRequest,
    auth: AuthContext = Depends(get_current_user),
    cases: CaseStateMachine = Depends(get_case_machine),
):
    case = cases.resolve(case_id, auth, request.outcome, request.details)
    return {"case": case_to_dict(case)}


@app.patch("/cases/{case_id}/status", tags=["Cases"])
def update_status(
    case_id: str,
    request: StatusUpdateRequest,
    auth: AuthContext = Depends(get_current_user),
    cases: CaseStateMachine = Depends(get_case_machine),
):
    case = cases.update_status(case_id, auth, request.status, request.description)
    return {"case": case_to_dict(case)}


# =============================================================================
# Agreements
# =============================================================================

@app.post("/cases/{case_id}/agreement", tags=["Agreements"], status_code=201)
def create_agreement(
    case_id: str,
    request: CreateAgreementRequest,
    auth: AuthContext = Depends(get_current_user),
    agreements: AgreementConsensusEngine = Depends(get_agreement_engine),
):
    agreement = agreements.create_agreement(case_id, auth, request.content)
    return {"agreement": agreement_to_dict(agreement)}


@app.get("/cases/{case_id}/agreement", tags=["Agreements"])
def get_case_agreement(
    case_id: str,
    auth: AuthContext = Depends(get_current_user),
    agreements: AgreementConsensusEngine = Depends(get_agreement_engine),
):
    return {"agreement": agreement_to_dict(agreements.get_by_case(case_id, auth))}


@app.get("/agreements/{agreement_id}", tags=["Agreements"])
def get_agreement(
    agreement_id: str,
    auth: AuthContext = Depends(get_current_user),
    agreements: AgreementConsensusEngine = Depends(get_agreement_engine),
):
    return {"agreement": agreement_to_dict(agreements.get(agreement_id, auth))}


@app.patch("/agreements/{agreement_id}", tags=["Agreements"])
def edit_agreement(
    agreement_id: str,
    request: EditAgreementRequest,
    auth: AuthContext = Depends(get_current_user),
    agreements: AgreementConsensusEngine = Depends(get_agreement_engine),
):
    agreement = agreements.edit_agreement(agreement_id, auth, content=request.content, status=request.status)
    return {"agreement": agreement_to_dict(agreement)}


@app.post("/agreements/{agreement_id}/sign", tags=["Agreements"])
def sign_agreement(
    agreement_id: str,
    request: Request,
    auth: AuthContext = Depends(get_current_user),
    agreements: AgreementConsensusEngine = Depends(get_agreement_engine),
):
    result = agreements.sign(
        agreement_id, auth,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    return {
        "agreement": agreement_to_dict(result.agreement),
        "all_signed": result.all_signed,
        "case_resolved": result.settled_case,
    }


@app.post("/agreements/{agreement_id}/execute", tags=["Agreements"])
def execute_agreement(
    agreement_id: str,
    auth: AuthContext = Depends(get_current_user),
    agreements: AgreementConsensusEngine = Depends(get_agreement_engine),
):
    return {"agreement": agreement_to_dict(agreements.execute(agreement_id, auth))}


# =============================================================================
# Admin
# =============================================================================

@app.get("/admin/stats", tags=["Admin"])
def admin_stats(
    auth: AuthContext = Depends(get_current_user),
    cases: CaseStateMachine = Depends(get_case_machine),
):
    return cases.stats(auth)


@app.get("/admin/panel-candidates", tags=["Admin"])
def panel_candidates(
    role: Optional[PanelRole] = None,
    auth: AuthContext = Depends(get_current_user),
    panels: PanelFormationService = Depends(get_panel_service),
):
    rows = panels.list_candidates(auth, role)
    return {
        "candidates": [
            dict(user_to_dict(row["user"]), panel_count=row["panel_count"])
            for row in rows
        ]
    }


@app.patch("/admin/users/{user_id}/verify", tags=["Admin"])
def verify_user(
    user_id: str,
    request: VerifyUserRequest = VerifyUserRequest(),
    auth: AuthContext = Depends(get_current_user),
    notifications: NotificationService = Depends(get_notification_service),
):
    user = notifications.verify_user(auth, user_id, request.is_verified)
    return {"user": user_to_dict(user)}


# =============================================================================
# Notifications
# =============================================================================

@app.get("/notifications", tags=["Notifications"])
def list_notifications(
    unread_only: bool = False,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    auth: AuthContext = Depends(get_current_user),
    notifications: NotificationService = Depends(get_notification_service),
):
    result = notifications.list_for(auth, unread_only=unread_only, page=page, limit=limit)
    result["notifications"] = [notification_to_dict(n) for n in result["notifications"]]
    return result


@app.patch("/notifications/read-all", tags=["Notifications"])
def mark_all_notifications_read(
    auth: AuthContext = Depends(get_current_user),
    notifications: NotificationService = Depends(get_notification_service),
):
    return {"updated": notifications.mark_all_read(auth)}


@app.patch("/notifications/{notification_id}/read", tags=["Notifications"])
def mark_notification_read(
    notification_id: str,
    auth: AuthContext = Depends(get_current_user),
    notifications: NotificationService = Depends(get_notification_service),
):
    return {"notification": notification_to_dict(notifications.mark_read(auth, notification_id))}


# =============================================================================
# Health
# =============================================================================

@app.get("/health", tags=["Health"], response_model=HealthResponse)
def health(db: Session = Depends(get_db_dependency)):
    settings = get_settings()
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except Exception as e:
        logger.warning(f"Health check database query failed: {e}")
        database = "unavailable"
    return HealthResponse(
        status="ok" if database == "ok" else "degraded",
        version=settings.service_version,
        database=database,
        realtime_backend=settings.realtime_backend.value,
        fanout_mode=settings.fanout_mode.value,
    )


# =============================================================================
# Realtime
# =============================================================================

WS_POLL_SECONDS = 0.5

MAX_SESSION_MESSAGE_CHARS = 2000

CASE_ACTIONS = ("joinCase", "leaveCase")
SESSION_ACTIONS = ("joinMediationSession", "leaveMediationSession", "mediationMessage", "typing")


def _ws_auth(token: Optional[str], user_id: Optional[str]) -> Optional[AuthContext]:
    effective = _user_id_from_token(token)
    if not effective and user_id:
        if not get_settings().ws_allow_user_id_param:
            logger.warning("WebSocket user_id parameter rejected (WS_ALLOW_USER_ID_PARAM is off)")
            return None
        effective = user_id
    if not effective:
        return None
    with get_db_session() as db:
        return get_auth_service(db).get_auth_context(effective)


def _can_view(auth: AuthContext, case_id: str) -> bool:
    with get_db_session() as db:
        case = db.get(Case, case_id)
        return case is not None and policy.can_view_case(db, auth, case)


def _denied(case_id: str) -> Dict[str, Any]:
    return {"event": "error", "case_id": case_id, "message": "Case not found or access denied"}


def _ws_action(
    auth: AuthContext,
    channel: RealtimeChannel,
    sub: Subscription,
    data: Dict[str, Any],
) -> Optional[Dict[str, Any]]:
    """Handle one client action. Returns the reply for the sender, if any."""
    action = data.get("action")
    case_id = data.get("case_id")
    if action not in CASE_ACTIONS + SESSION_ACTIONS or not case_id or not isinstance(case_id, str):
        return {"event": "error", "message": "Unknown action"}

    if action == "leaveCase":
        sub.leave(case_topic(case_id))
        return {"event": "leftCase", "case_id": case_id}
    if action == "joinCase":
        if not _can_view(auth, case_id):
            return _denied(case_id)
        sub.join(case_topic(case_id))
        return {"event": "joinedCase", "case_id": case_id}

    return _session_action(auth, channel, sub, action, case_id, data)


def _session_action(
    auth: AuthContext,
    channel: RealtimeChannel,
    sub: Subscription,
    action: str,
    case_id: str,
    data: Dict[str, Any],
) -> Optional[Dict[str, Any]]:
    """Mediation session room: presence, chat and typing, relayed to the other participants."""
    topic = mediation_topic(case_id)
    sender = {"user_id": auth.user_id, "user_name": auth.name}

    if action == "joinMediationSession":
        if not _can_view(auth, case_id):
            return _denied(case_id)
        sub.join(topic)
        channel.publish(topic, build_message(topic, EVENT_USER_JOINED_SESSION, case_id=case_id, **sender), exclude=sub)
        return {"event": "joinedMediationSession", "case_id": case_id}

    if topic not in sub.topics:
        return {"event": "error", "case_id": case_id, "message": "Join the mediation session first"}

    if action == "leaveMediationSession":
        sub.leave(topic)
        channel.publish(topic, build_message(topic, EVENT_USER_LEFT_SESSION, case_id=case_id, **sender))
        return {"event": "leftMediationSession", "case_id": case_id}

    if action == "typing":
        channel.publish(topic, build_message(
            topic, EVENT_USER_TYPING, case_id=case_id, is_typing=bool(data.get("is_typing")), **sender,
        ), exclude=sub)
        return None

    text = data.get("message")
    if not isinstance(text, str) or not text.strip():
        return {"event": "error", "case_id": case_id, "message": "Message text is required"}
    if len(text) > MAX_SESSION_MESSAGE_CHARS:
        return {"event": "error", "case_id": case_id, "message": "Message is too long"}
    channel.publish(topic, build_message(
        topic, EVENT_MEDIATION_MESSAGE, case_id=case_id, message=text.strip(),
        timestamp=data.get("timestamp") or datetime.utcnow().isoformat(), **sender,
    ), exclude=sub)
    return None


@app.websocket("/ws")
async def ws_events(websocket: WebSocket, token: Optional[str] = None, user_id: Optional[str] = None):
    """
    Realtime events for the connected user.

    Joins `user:{id}` (and `admin` for admins) on connect. The client sends
    `{"action": "joinCase" | "leaveCase", "case_id": ...}` to follow a case, and
    `joinMediationSession` / `leaveMediationSession` / `mediationMessage` /
    `typing` for the live session room.
    """
    auth = await asyncio.to_thread(_ws_auth, token, user_id)
    if auth is None:
        await websocket.close(code=4401)
        return

    await websocket.accept()
    channel = get_realtime_channel()
    topics = [user_topic(auth.user_id)]
    if auth.is_admin:
        topics.append(ADMIN_TOPIC)
    sub = channel.subscribe(topics)

    async def pump():
        while not sub.closed:
            message = await asyncio.to_thread(sub.get, WS_POLL_SECONDS)
            if message is not None:
                await websocket.send_json(message)

    await websocket.send_json({"event": "connected", "user_id": auth.user_id, "topics": topics})
    pump_task = asyncio.create_task(pump())
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except ValueError:
                await websocket.send_json({"event": "error", "message": "Invalid JSON"})
                continue
            if not isinstance(data, dict):
                await websocket.send_json({"event": "error", "message": "Expected an object"})
                continue
            reply = await asyncio.to_thread(_ws_action, auth, channel, sub, data)
            if reply is not None:
                await websocket.send_json(reply)
    except WebSocketDisconnect:
        pass
    finally:
        for topic in [t for t in sub.topics if t.startswith("mediation:")]:
            channel.publish(topic, build_message(
                topic, EVENT_USER_LEFT_SESSION, case_id=topic.split(":", 1)[1],
                user_id=auth.user_id, user_name=auth.name,
            ), exclude=sub)
        channel.unsubscribe(sub)
        pump_task.cancel()


# =============================================================================
# Startup/Shutdown
# =============================================================================

@app.on_event("startup")
async def startup_event():
    """Initialize on startup"""
    settings = get_settings()
    logger.info(f"Starting Mediation Service v{settings.service_version}")
    logger.info(
        f"Fan-out mode: {settings.fanout_mode.value}, realtime backend: {settings.realtime_backend.value}"
    )
    for warning in settings.validate_runtime_config():
        logger.warning(f"Config: {warning}")
    init_db()
    get_realtime_channel()


@app.on_event("shutdown")
async def shutdown_event():
    reset_realtime_channel()
