"""
Case access predicates.

The single place that answers "who may do what to this case". Every service
operation asks these helpers instead of comparing role strings itself.
"""

from typing import List, Optional, Set

from sqlalchemy.orm import Session

from .auth import AuthContext
from .db.models import Case, Panel, PanelMember, User, UserRole
from .errors import AccessDenied


def is_admin(auth: AuthContext) -> bool:
    return auth.role == UserRole.ADMIN


def is_plaintiff(auth: AuthContext, case: Case) -> bool:
    return case.plaintiff_id == auth.user_id


def is_defendant(auth: AuthContext, case: Case) -> bool:
    return case.defendant_id is not None and case.defendant_id == auth.user_id


def is_party(auth: AuthContext, case: Case) -> bool:
    """Plaintiff, or the bound defendant."""
    return is_plaintiff(auth, case) or is_defendant(auth, case)


def panel_member_ids(db: Session, case_id: str) -> List[str]:
    rows = (
        db.query(PanelMember.user_id)
        .join(Panel, Panel.id == PanelMember.panel_id)
        .filter(Panel.case_id == case_id)
        .order_by(PanelMember.user_id)
        .all()
    )
    return [r[0] for r in rows]


def is_panel_member(db: Session, auth: AuthContext, case_id: str) -> bool:
    hit = (
        db.query(PanelMember.user_id)
        .join(Panel, Panel.id == PanelMember.panel_id)
        .filter(Panel.case_id == case_id, PanelMember.user_id == auth.user_id)
        .first()
    )
    return hit is not None


def can_view_case(db: Session, auth: AuthContext, case: Case) -> bool:
    return is_admin(auth) or is_party(auth, case) or is_panel_member(db, auth, case.id)


def can_moderate_case(db: Session, auth: AuthContext, case: Case) -> bool:
    """Generic status updates: admins and the case's panel members."""
    return is_admin(auth) or is_panel_member(db, auth, case.id)


def can_edit_agreement(auth: AuthContext, case: Case) -> bool:
    return is_admin(auth) or is_party(auth, case)


def required_signers(case: Case) -> Set[str]:
    """Plaintiff always; defendant if and only if one is bound."""
    signers = {case.plaintiff_id}
    if case.defendant_id:
        signers.add(case.defendant_id)
    return signers


def party_ids(case: Case) -> List[str]:
    ids = [case.plaintiff_id]
    if case.defendant_id:
        ids.append(case.defendant_id)
    return ids


def admin_ids(db: Session) -> List[str]:
    rows = (
        db.query(User.id)
        .filter(User.role == UserRole.ADMIN, User.is_active == True)  # noqa: E712
        .order_by(User.id)
        .all()
    )
    return [r[0] for r in rows]


# =============================================================================
# Guards
# =============================================================================

def require_admin(auth: AuthContext, action: Optional[str] = None) -> None:
    if not is_admin(auth):
        raise AccessDenied(f"Admin capability required{' to ' + action if action else ''}")


def require_verified(auth: AuthContext) -> None:
    if not auth.is_verified:
        raise AccessDenied("Account must be verified before filing a case")


def require_case_view(db: Session, auth: AuthContext, case: Case) -> None:
    if not can_view_case(db, auth, case):
        raise AccessDenied("Case not found or access denied")
