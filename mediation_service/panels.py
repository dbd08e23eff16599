"""
Panel Formation
===============

Assembles the three-expert panel for an accepted case.

A panel is written once per case and must seat at least one lawyer, one
religious scholar and one social expert. The panel rows and the case's move to
PANEL_CREATED commit together; a rejected request leaves nothing behind.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .auth import AuthContext
from .db.models import CaseStatus, NotificationCategory, Panel, PanelMember, PanelRole, User, UserRole
from .errors import (
    IncompletePanel, InvalidCaseState, InvalidPanelMember, NotFound, PanelAlreadyExists, ValidationFailed,
)
from .lifecycle import CaseStateMachine
from .notifications import make_notice
from . import policy

logger = logging.getLogger(__name__)

REQUIRED_ROLES = frozenset(PanelRole)

MemberSpec = Tuple[str, Union[PanelRole, str]]


def coerce_role(role: Union[PanelRole, str]) -> PanelRole:
    if isinstance(role, PanelRole):
        return role
    try:
        return PanelRole(str(role).strip().lower())
    except ValueError:
        raise ValidationFailed(f"Unknown panel role: {role}")


def missing_roles(roles: Iterable[PanelRole]) -> List[PanelRole]:
    present = set(roles)
    return sorted((r for r in REQUIRED_ROLES if r not in present), key=lambda r: r.value)


class PanelFormationService:
    """Forms and reads mediation panels."""

    def __init__(self, db: Session, cases: CaseStateMachine):
        self.db = db
        self.cases = cases

    def form_panel(self, case_id: str, auth: AuthContext, members: Iterable[MemberSpec]) -> Panel:
        """
        Seat ``members`` (user_id, role) on the case's panel and move the case
        to PANEL_CREATED.
        """
        policy.require_admin(auth, "form panels")
        seats = [(user_id, coerce_role(role)) for user_id, role in members]

        def op(pending: List[Any]) -> Panel:
            case = self.cases.load_case(case_id)
            if self._find_panel(case.id) is not None:
                raise PanelAlreadyExists()
            if case.status != CaseStatus.ACCEPTED:
                raise InvalidCaseState(
                    f"Panels can only be formed for accepted cases (case is {case.status.value})"
                )

            self._check_members(seats)
            absent = missing_roles(role for _, role in seats)
            if absent:
                raise IncompletePanel(
                    "Panel is missing required role(s): " + ", ".join(r.value for r in absent)
                )

            panel = Panel(case_id=case.id, created_by_user_id=auth.user_id)
            for user_id, role in seats:
                panel.members.append(PanelMember(user_id=user_id, role=role))
            self.db.add(panel)
            try:
                self.db.flush()
            except IntegrityError:
                raise PanelAlreadyExists()

            self.cases.apply_transition(
                case, CaseStatus.PANEL_CREATED,
                "Mediation panel has been created", auth.user_id, pending,
            )
            pending.append(make_notice(
                NotificationCategory.PANEL_INVITATION,
                [user_id for user_id, _ in seats],
                "Panel Invitation",
                "You have been invited to serve on a mediation panel.",
                case.id,
            ))
            return panel

        panel = self.cases.run(op, "form panel")
        logger.info(f"Panel {panel.id} formed for case {case_id} with {len(seats)} member(s)")
        return panel

    def _check_members(self, seats: List[Tuple[str, PanelRole]]) -> None:
        ids = [user_id for user_id, _ in seats]
        if len(set(ids)) != len(ids):
            raise InvalidPanelMember("A user can hold only one seat on a panel")

        users = {u.id: u for u in self.db.query(User).filter(User.id.in_(ids)).all()}
        for user_id in ids:
            user = users.get(user_id)
            if user is None:
                raise InvalidPanelMember(f"User {user_id} does not exist")
            if not user.is_active or not user.is_verified:
                raise InvalidPanelMember(f"User {user_id} is not an active, verified account")

    def _find_panel(self, case_id: str) -> Optional[Panel]:
        return self.db.query(Panel).filter(Panel.case_id == case_id).first()

    def get_panel(self, case_id: str, auth: AuthContext) -> Panel:
        case = self.cases.get_case(case_id, auth)
        panel = self._find_panel(case.id)
        if panel is None:
            raise NotFound("Panel not found")
        return panel

    def list_candidates(self, auth: AuthContext, role: Optional[Union[PanelRole, str]] = None) -> List[Dict[str, Any]]:
        """Verified expert accounts, with how many panels each already sits on."""
        policy.require_admin(auth, "list panel candidates")
        expert_roles = [UserRole(r.value) for r in PanelRole]
        if role is not None:
            expert_roles = [UserRole(coerce_role(role).value)]

        seat_counts = (
            self.db.query(PanelMember.user_id, func.count(PanelMember.panel_id).label("seats"))
            .group_by(PanelMember.user_id)
            .subquery()
        )
        rows = (
            self.db.query(User, func.coalesce(seat_counts.c.seats, 0))
            .outerjoin(seat_counts, seat_counts.c.user_id == User.id)
            .filter(
                User.role.in_(expert_roles),
                User.is_verified == True,  # noqa: E712
                User.is_active == True,  # noqa: E712
            )
            .order_by(User.name, User.id)
            .all()
        )
        return [{"user": user, "panel_count": int(count)} for user, count in rows]
