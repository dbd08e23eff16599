"""
Case Lifecycle
==============

Authoritative owner of case status.

    PENDING -> AWAITING_RESPONSE -> ACCEPTED -> PANEL_CREATED
            -> MEDIATION_IN_PROGRESS -> RESOLVED | UNRESOLVED
    AWAITING_RESPONSE -> REJECTED

RESOLVED, UNRESOLVED and REJECTED are terminal. ACCEPTED -> RESOLVED and
PANEL_CREATED -> RESOLVED are settlement edges: only agreement consensus may
take them.

Every command runs as one unit through ``CaseStateMachine.run``: the status
write, its CaseUpdate row and any panel/agreement rows commit together. Only
after the commit does the machine publish one ``caseUpdate`` per transition on
the case topic (stamped with the case version) and then fan out
notifications. A failed commit emits nothing.

Case rows carry a version stamp. A command that loses a race is retried
against fresh state (TRANSITION_RETRIES times) and then rejected with
ConcurrentModification.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, FrozenSet, List, Optional, TypeVar

from sqlalchemy import func
from sqlalchemy.exc import OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from .auth import AuthContext
from .config import get_settings
from .db.models import (
    Case, CaseStatus, CaseType, CaseUpdate, NotificationCategory, OppositeParty, Panel, PanelMember, User,
)
from .errors import (
    AccessDenied, ConcurrentModification, InvalidTransition, MediationError, NotFound, Unavailable,
    ValidationFailed,
)
from .notifications import Notice, NotificationFanout, make_notice
from . import policy
from .realtime import (
    ADMIN_TOPIC, EVENT_CASE_FILED, EVENT_CASE_UPDATE, RealtimeChannel, build_message, case_topic,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# Transition graph
# =============================================================================

TRANSITIONS: Dict[CaseStatus, FrozenSet[CaseStatus]] = {
    CaseStatus.PENDING: frozenset({CaseStatus.AWAITING_RESPONSE}),
    CaseStatus.AWAITING_RESPONSE: frozenset({CaseStatus.ACCEPTED, CaseStatus.REJECTED}),
    CaseStatus.ACCEPTED: frozenset({CaseStatus.PANEL_CREATED}),
    CaseStatus.PANEL_CREATED: frozenset({CaseStatus.MEDIATION_IN_PROGRESS}),
    CaseStatus.MEDIATION_IN_PROGRESS: frozenset({CaseStatus.RESOLVED, CaseStatus.UNRESOLVED}),
    CaseStatus.RESOLVED: frozenset(),
    CaseStatus.UNRESOLVED: frozenset(),
    CaseStatus.REJECTED: frozenset(),
}

# Reachable only when a signed agreement settles the case
SETTLEMENT_TRANSITIONS: Dict[CaseStatus, FrozenSet[CaseStatus]] = {
    CaseStatus.ACCEPTED: frozenset({CaseStatus.RESOLVED}),
    CaseStatus.PANEL_CREATED: frozenset({CaseStatus.RESOLVED}),
}

TERMINAL_STATUSES = frozenset({CaseStatus.RESOLVED, CaseStatus.UNRESOLVED, CaseStatus.REJECTED})

IN_PROGRESS_STATUSES = frozenset({
    CaseStatus.AWAITING_RESPONSE, CaseStatus.ACCEPTED,
    CaseStatus.PANEL_CREATED, CaseStatus.MEDIATION_IN_PROGRESS,
})


def allowed_targets(status: CaseStatus, settlement: bool = False) -> FrozenSet[CaseStatus]:
    targets = TRANSITIONS.get(status, frozenset())
    if settlement:
        targets = targets | SETTLEMENT_TRANSITIONS.get(status, frozenset())
    return targets


def can_transition(current: CaseStatus, target: CaseStatus, settlement: bool = False) -> bool:
    return target in allowed_targets(current, settlement)


def is_terminal(status: CaseStatus) -> bool:
    return status in TERMINAL_STATUSES


# Notification wording and category per target status
STATUS_NOTICES = {
    CaseStatus.AWAITING_RESPONSE: (NotificationCategory.CASE_UPDATE, "Opposite Party Contacted"),
    CaseStatus.ACCEPTED: (NotificationCategory.CASE_UPDATE, "Mediation Accepted"),
    CaseStatus.REJECTED: (NotificationCategory.CASE_UPDATE, "Mediation Declined"),
    CaseStatus.PANEL_CREATED: (NotificationCategory.CASE_UPDATE, "Mediation Panel Created"),
    CaseStatus.MEDIATION_IN_PROGRESS: (NotificationCategory.MEDIATION_SCHEDULED, "Mediation Scheduled"),
    CaseStatus.RESOLVED: (NotificationCategory.CASE_RESOLVED, "Case Resolved"),
    CaseStatus.UNRESOLVED: (NotificationCategory.CASE_RESOLVED, "Case Closed Without Resolution"),
}

# Targets whose fan-out also reaches the panel
PANEL_AUDIENCE = frozenset({CaseStatus.MEDIATION_IN_PROGRESS, CaseStatus.RESOLVED, CaseStatus.UNRESOLVED})


# =============================================================================
# Emissions (released only after commit)
# =============================================================================

@dataclass
class TransitionEvent:
    case_id: str
    previous: CaseStatus
    status: CaseStatus
    description: str
    actor_id: Optional[str] = None
    version: Optional[int] = None
    notices: List[Notice] = field(default_factory=list)


@dataclass
class Broadcast:
    topic: str
    message: Dict[str, Any]


class CaseStateMachine:
    """Validates, applies and announces case status transitions."""

    def __init__(
        self,
        db: Session,
        fanout: Optional[NotificationFanout] = None,
        channel: Optional[RealtimeChannel] = None,
        retries: Optional[int] = None,
    ):
        self.db = db
        self.fanout = fanout
        self.channel = channel
        if retries is None:
            retries = get_settings().transition_retries
        self.retries = max(retries, 0)

    # =========================================================================
    # Unit of work
    # =========================================================================

    def run(self, operation: Callable[[List[Any]], T], label: str = "case command") -> T:
        """
        Execute ``operation`` as one transaction and emit what it queued.

        ``operation`` receives a list it appends TransitionEvent / Notice /
        Broadcast items to. Those are released only once the commit succeeds.
        """
        attempts = self.retries + 1
        for attempt in range(1, attempts + 1):
            pending: List[Any] = []
            try:
                result = operation(pending)
                self.db.commit()
            except StaleDataError:
                self.db.rollback()
                if attempt < attempts:
                    logger.info(f"{label}: lost a concurrent update, retrying ({attempt}/{self.retries})")
                    continue
                logger.warning(f"{label}: concurrent modification after {attempts} attempt(s)")
                raise ConcurrentModification()
            except MediationError:
                self.db.rollback()
                raise
            except (OperationalError, PoolTimeoutError) as e:
                self.db.rollback()
                logger.error(f"{label}: storage unavailable: {e}")
                raise Unavailable() from e
            except Exception:
                self.db.rollback()
                raise
            self._emit(pending)
            return result
        raise ConcurrentModification()

    def load_case(self, case_id: str) -> Case:
        case = self.db.get(Case, case_id, populate_existing=True)
        if not case:
            raise NotFound("Case not found")
        return case

    def apply_transition(
        self,
        case: Case,
        target: CaseStatus,
        description: str,
        actor_id: Optional[str],
        pending: List[Any],
        settlement: bool = False,
    ) -> TransitionEvent:
        """
        Move ``case`` to ``target`` inside the caller's unit of work.

        This is the only code path that changes Case.status.
        """
        current = case.status
        if not can_transition(current, target, settlement):
            raise InvalidTransition(f"Cannot move case from {current.value} to {target.value}")

        case.status = target
        self.db.add(CaseUpdate(
            case_id=case.id,
            status=target,
            description=description,
            created_by_user_id=actor_id,
        ))
        # Version check happens here; a concurrent writer surfaces as StaleDataError
        self.db.flush()

        event = TransitionEvent(
            case_id=case.id,
            previous=current,
            status=target,
            description=description,
            actor_id=actor_id,
            version=case.version,
            notices=[self._status_notice(case, target, description)],
        )
        pending.append(event)
        logger.info(f"Case {case.id}: {current.value} -> {target.value}")
        return event

    def recipients_for(self, case: Case, target: CaseStatus) -> List[str]:
        recipients = policy.party_ids(case)
        if target in PANEL_AUDIENCE:
            recipients += policy.panel_member_ids(self.db, case.id)
        return recipients

    def _status_notice(self, case: Case, target: CaseStatus, description: str) -> Notice:
        category, title = STATUS_NOTICES.get(target, (NotificationCategory.CASE_UPDATE, "Case Status Updated"))
        return make_notice(category, self.recipients_for(case, target), title, description, case.id)

    # =========================================================================
    # Emission
    # =========================================================================

    def _emit(self, pending: List[Any]) -> None:
        # Broadcasts first: inline fan-out writes to the database and may stall
        for item in pending:
            if isinstance(item, TransitionEvent):
                self._publish_case_update(item)
            elif isinstance(item, Broadcast):
                self._publish(item.topic, item.message)
        for item in pending:
            if isinstance(item, TransitionEvent):
                for notice in item.notices:
                    self.dispatch_notice(notice)
            elif isinstance(item, Notice):
                self.dispatch_notice(item)

    def dispatch_notice(self, notice: Notice) -> None:
        if self.fanout is None:
            return
        self.fanout.dispatch(notice)

    def _publish_case_update(self, event: TransitionEvent) -> None:
        topic = case_topic(event.case_id)
        self._publish(topic, build_message(
            topic, EVENT_CASE_UPDATE,
            case_id=event.case_id,
            status=event.status.value,
            message=event.description,
            previous_status=event.previous.value,
            version=event.version,
        ))

    def _publish(self, topic: str, message: Dict[str, Any]) -> None:
        if self.channel is None:
            return
        try:
            self.channel.publish(topic, message)
        except Exception as e:
            logger.warning(f"Realtime publish to {topic} failed: {e}")

    # =========================================================================
    # Commands
    # =========================================================================

    def file_case(
        self,
        auth: AuthContext,
        case_type: CaseType,
        issue_description: str,
        opposite_party: Dict[str, Optional[str]],
        is_court_pending: bool = False,
        case_number: Optional[str] = None,
        fir_number: Optional[str] = None,
        court_police_station: Optional[str] = None,
    ) -> Case:
        """Create a case in PENDING. Filing is not a transition: no CaseUpdate row."""
        policy.require_verified(auth)
        if not (issue_description or "").strip():
            raise ValidationFailed("Issue description is required")
        party_name = (opposite_party.get("name") or "").strip()
        if not party_name:
            raise ValidationFailed("Opposite party name is required")

        def op(pending: List[Any]) -> Case:
            case = Case(
                case_type=case_type,
                issue_description=issue_description.strip(),
                status=CaseStatus.PENDING,
                is_court_pending=bool(is_court_pending),
                case_number=case_number or None,
                fir_number=fir_number or None,
                court_police_station=court_police_station or None,
                plaintiff_id=auth.user_id,
            )
            case.opposite_party = OppositeParty(
                name=party_name,
                email=opposite_party.get("email") or None,
                phone=opposite_party.get("phone") or None,
                address=opposite_party.get("address") or None,
            )
            self.db.add(case)
            self.db.flush()

            message = f"A new {case_type.value} case has been registered and is pending review."
            pending.append(make_notice(
                NotificationCategory.CASE_UPDATE, policy.admin_ids(self.db),
                "New Case Registered", message, case.id,
            ))
            pending.append(Broadcast(ADMIN_TOPIC, build_message(
                ADMIN_TOPIC, EVENT_CASE_FILED,
                case_id=case.id, status=CaseStatus.PENDING.value, message="New case registered",
            )))
            return case

        case = self.run(op, "file case")
        logger.info(f"Case {case.id} filed by {auth.user_id}")
        return case

    def contact_opposite_party(self, case_id: str, auth: AuthContext, message: Optional[str] = None) -> Case:
        policy.require_admin(auth, "contact the opposite party")

        def op(pending: List[Any]) -> Case:
            case = self.load_case(case_id)
            self._expect(case, CaseStatus.PENDING, "contact the opposite party")
            self.apply_transition(
                case, CaseStatus.AWAITING_RESPONSE,
                message or "Opposite party has been contacted and a response is awaited",
                auth.user_id, pending,
            )
            return case

        return self.run(op, "contact opposite party")

    def record_opposite_party_response(
        self,
        case_id: str,
        auth: AuthContext,
        response: CaseStatus,
        defendant_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Case:
        policy.require_admin(auth, "record the opposite party's response")
        if response not in (CaseStatus.ACCEPTED, CaseStatus.REJECTED):
            raise ValidationFailed("Response must be accepted or rejected")

        def op(pending: List[Any]) -> Case:
            case = self.load_case(case_id)
            self._expect(case, CaseStatus.AWAITING_RESPONSE, "record a response")

            if response == CaseStatus.ACCEPTED:
                if defendant_id:
                    self._bind_defendant(case, defendant_id)
                text = description or "Opposite party accepted mediation"
            else:
                text = description or "Opposite party declined mediation"

            self.apply_transition(case, response, text, auth.user_id, pending)
            return case

        return self.run(op, "record opposite party response")

    def _bind_defendant(self, case: Case, defendant_id: str) -> None:
        if defendant_id == case.plaintiff_id:
            raise ValidationFailed("The plaintiff cannot be bound as defendant")
        user = self.db.get(User, defendant_id)
        if not user or not user.is_active:
            raise ValidationFailed("Defendant must be an existing, active user")
        case.defendant_id = defendant_id

    def start_mediation(
        self,
        case_id: str,
        auth: AuthContext,
        scheduled_at: Optional[datetime] = None,
        description: Optional[str] = None,
    ) -> Case:
        policy.require_admin(auth, "start mediation")

        def op(pending: List[Any]) -> Case:
            case = self.load_case(case_id)
            self._expect(case, CaseStatus.PANEL_CREATED, "start mediation")
            case.mediation_start = scheduled_at or datetime.utcnow()
            when = case.mediation_start.strftime("%Y-%m-%d %H:%M")
            self.apply_transition(
                case, CaseStatus.MEDIATION_IN_PROGRESS,
                description or f"Mediation session scheduled for {when}",
                auth.user_id, pending,
            )
            return case

        return self.run(op, "start mediation")

    def resolve(self, case_id: str, auth: AuthContext, outcome: CaseStatus, details: str) -> Case:
        policy.require_admin(auth, "resolve cases")
        if outcome not in (CaseStatus.RESOLVED, CaseStatus.UNRESOLVED):
            raise ValidationFailed("Outcome must be resolved or unresolved")

        def op(pending: List[Any]) -> Case:
            case = self.load_case(case_id)
            self._expect(case, CaseStatus.MEDIATION_IN_PROGRESS, "resolve the case")
            case.mediation_end = datetime.utcnow()
            case.resolution = details
            default = "Case resolved through mediation" if outcome == CaseStatus.RESOLVED \
                else "Mediation ended without resolution"
            self.apply_transition(case, outcome, details or default, auth.user_id, pending)
            return case

        return self.run(op, "resolve case")

    def update_status(
        self,
        case_id: str,
        auth: AuthContext,
        target: CaseStatus,
        description: Optional[str] = None,
    ) -> Case:
        """Administrative move along the graph, for admins and the case's panel."""

        def op(pending: List[Any]) -> Case:
            case = self.load_case(case_id)
            if not policy.can_moderate_case(self.db, auth, case):
                raise AccessDenied("Only admins or panel members can update case status")

            if target == CaseStatus.PANEL_CREATED and not self._has_panel(case.id):
                raise InvalidTransition("A panel must be formed before the case can move to panel_created")
            if target == CaseStatus.MEDIATION_IN_PROGRESS and case.mediation_start is None:
                case.mediation_start = datetime.utcnow()
            if target in (CaseStatus.RESOLVED, CaseStatus.UNRESOLVED):
                case.mediation_end = datetime.utcnow()
                if description:
                    case.resolution = description

            self.apply_transition(
                case, target,
                description or f"Case status updated to {target.value}",
                auth.user_id, pending,
            )
            return case

        return self.run(op, "update status")

    def _expect(self, case: Case, status: CaseStatus, action: str) -> None:
        if case.status != status:
            raise InvalidTransition(
                f"Cannot {action}: case is {case.status.value}, expected {status.value}"
            )

    def _has_panel(self, case_id: str) -> bool:
        return self.db.query(Panel.id).filter(Panel.case_id == case_id).first() is not None

    # =========================================================================
    # Reads
    # =========================================================================

    def get_case(self, case_id: str, auth: AuthContext) -> Case:
        case = self.load_case(case_id)
        policy.require_case_view(self.db, auth, case)
        return case

    def timeline(self, case_id: str, auth: AuthContext) -> List[CaseUpdate]:
        case = self.get_case(case_id, auth)
        return (
            self.db.query(CaseUpdate)
            .filter(CaseUpdate.case_id == case.id)
            .order_by(CaseUpdate.seq)
            .all()
        )

    def list_cases_for(
        self,
        auth: AuthContext,
        status: Optional[CaseStatus] = None,
        case_type: Optional[CaseType] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Dict[str, Any]:
        query = self.db.query(Case)
        if not policy.is_admin(auth):
            panel_cases = (
                self.db.query(Panel.case_id)
                .join(PanelMember, PanelMember.panel_id == Panel.id)
                .filter(PanelMember.user_id == auth.user_id)
            )
            query = query.filter(
                (Case.plaintiff_id == auth.user_id)
                | (Case.defendant_id == auth.user_id)
                | (Case.id.in_(panel_cases))
            )
        if status:
            query = query.filter(Case.status == status)
        if case_type:
            query = query.filter(Case.case_type == case_type)

        total = query.count()
        cases = (
            query.order_by(Case.created_at.desc(), Case.id)
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return {
            "cases": cases,
            "total": total,
            "page": page,
            "limit": limit,
            "pages": (total + limit - 1) // limit if limit else 0,
        }

    def stats(self, auth: AuthContext) -> Dict[str, Any]:
        """Admin dashboard counters."""
        policy.require_admin(auth, "view statistics")

        by_status = {s.value: 0 for s in CaseStatus}
        for status, count in self.db.query(Case.status, func.count(Case.id)).group_by(Case.status).all():
            by_status[status.value] = count

        by_type = {t.value: 0 for t in CaseType}
        for case_type, count in self.db.query(Case.case_type, func.count(Case.id)).group_by(Case.case_type).all():
            by_type[case_type.value] = count

        total = sum(by_status.values())
        resolved = by_status[CaseStatus.RESOLVED.value]
        return {
            "total_cases": total,
            "pending_cases": by_status[CaseStatus.PENDING.value],
            "in_progress_cases": sum(by_status[s.value] for s in IN_PROGRESS_STATUSES),
            "resolved_cases": resolved,
            "unresolved_cases": by_status[CaseStatus.UNRESOLVED.value],
            "rejected_cases": by_status[CaseStatus.REJECTED.value],
            "resolution_rate": round(resolved / total * 100, 1) if total else 0.0,
            "by_status": by_status,
            "by_type": by_type,
        }
