"""
Agreement Consensus
===================

One settlement agreement per case, signed by every required signer.

Required signers are the plaintiff and, when bound, the defendant. Content can
be edited until the agreement is SIGNED; after that it is frozen.

Consensus is detected exactly once: each signature bumps a running
``signature_count`` on the agreement row with an atomic UPDATE, and the move
to SIGNED is a compare-and-set on the status column. Whichever signer's
transaction wins that compare-and-set also settles the case (RESOLVED) in the
same commit. Everyone else sees rowcount 0 and does nothing more.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .auth import AuthContext
from .db.models import (
    Agreement, AgreementSignature, AgreementStatus, Case, CaseStatus, NotificationCategory,
)
from .errors import (
    AccessDenied, AgreementAlreadyExists, AgreementLocked, AlreadySigned, InvalidCaseState,
    NotFound, ValidationFailed,
)
from .lifecycle import CaseStateMachine
from .notifications import make_notice
from . import policy

logger = logging.getLogger(__name__)

# Case statuses an agreement may be drafted in
DRAFTABLE_STATUSES = frozenset({
    CaseStatus.ACCEPTED, CaseStatus.PANEL_CREATED, CaseStatus.MEDIATION_IN_PROGRESS,
})

EDITABLE_STATUSES = frozenset({AgreementStatus.DRAFT, AgreementStatus.PENDING_SIGNATURES})

# Cases that can no longer be settled
CLOSED_STATUSES = frozenset({CaseStatus.REJECTED, CaseStatus.UNRESOLVED})

SETTLEMENT_DESCRIPTION = "Agreement signed by all parties"


@dataclass
class SignResult:
    signature: AgreementSignature
    agreement: Agreement
    all_signed: bool
    settled_case: bool = False


class AgreementConsensusEngine:
    """Drafting, editing, signing and execution of settlement agreements."""

    def __init__(self, db: Session, cases: CaseStateMachine):
        self.db = db
        self.cases = cases

    def _load(self, agreement_id: str) -> Agreement:
        agreement = self.db.get(Agreement, agreement_id, populate_existing=True)
        if not agreement:
            raise NotFound("Agreement not found")
        return agreement

    def _for_case(self, case_id: str) -> Optional[Agreement]:
        return (
            self.db.query(Agreement)
            .populate_existing()
            .filter(Agreement.case_id == case_id)
            .first()
        )

    # =========================================================================
    # Drafting
    # =========================================================================

    def create_agreement(self, case_id: str, auth: AuthContext, content: str) -> Agreement:
        if not (content or "").strip():
            raise ValidationFailed("Agreement content is required")

        def op(pending: List[Any]) -> Agreement:
            case = self.cases.load_case(case_id)
            if not policy.can_edit_agreement(auth, case):
                raise AccessDenied("Only admins or the parties can draft the agreement")
            if self._for_case(case.id) is not None:
                raise AgreementAlreadyExists()
            if case.status not in DRAFTABLE_STATUSES:
                raise InvalidCaseState(
                    f"Agreements cannot be drafted while the case is {case.status.value}"
                )

            agreement = Agreement(
                case_id=case.id,
                content=content,
                status=AgreementStatus.DRAFT,
                signature_count=0,
                created_by_user_id=auth.user_id,
            )
            self.db.add(agreement)
            try:
                self.db.flush()
            except IntegrityError:
                raise AgreementAlreadyExists()

            pending.append(make_notice(
                NotificationCategory.AGREEMENT_READY,
                sorted(policy.required_signers(case)),
                "Agreement Ready for Review",
                "A settlement agreement has been drafted for your case. Please review and sign.",
                case.id,
            ))
            return agreement

        agreement = self.cases.run(op, "create agreement")
        logger.info(f"Agreement {agreement.id} drafted for case {case_id} by {auth.user_id}")
        return agreement

    def edit_agreement(
        self,
        agreement_id: str,
        auth: AuthContext,
        content: Optional[str] = None,
        status: Optional[AgreementStatus] = None,
    ) -> Agreement:
        if status is not None and status not in EDITABLE_STATUSES:
            raise ValidationFailed("Status can only be set to draft or pending_signatures")
        if content is not None and not content.strip():
            raise ValidationFailed("Agreement content cannot be empty")

        def op(pending: List[Any]) -> Agreement:
            agreement = self._load(agreement_id)
            case = self.cases.load_case(agreement.case_id)
            if not policy.can_edit_agreement(auth, case):
                raise AccessDenied("Only admins or the parties can edit the agreement")
            if agreement.status not in EDITABLE_STATUSES:
                raise AgreementLocked()

            values = {}
            if content is not None:
                values[Agreement.content] = content
            if status is not None:
                values[Agreement.status] = status
            if not values:
                return agreement
            values[Agreement.updated_at] = datetime.utcnow()

            # Guarded write: a signature that completed consensus meanwhile wins
            changed = (
                self.db.query(Agreement)
                .filter(Agreement.id == agreement.id, Agreement.status.in_(EDITABLE_STATUSES))
                .update(values, synchronize_session=False)
            )
            if changed != 1:
                raise AgreementLocked()
            return self._load(agreement.id)

        return self.cases.run(op, "edit agreement")

    # =========================================================================
    # Signing
    # =========================================================================

    def sign(
        self,
        agreement_id: str,
        auth: AuthContext,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SignResult:
        """
        Record the caller's signature.

        The signer who completes the required set moves the agreement to SIGNED
        and the case to RESOLVED in the same transaction.
        """

        def op(pending: List[Any]) -> SignResult:
            agreement = self._load(agreement_id)
            case = self.cases.load_case(agreement.case_id)
            signers = policy.required_signers(case)

            if auth.user_id not in signers:
                raise AccessDenied("Only the parties to the case can sign this agreement")
            if self._has_signed(agreement.id, auth.user_id):
                raise AlreadySigned()
            if case.status in CLOSED_STATUSES:
                raise InvalidCaseState(f"Case is {case.status.value}; the agreement cannot be signed")
            if agreement.status not in EDITABLE_STATUSES:
                raise AgreementLocked("Agreement is no longer open for signatures")

            signature = AgreementSignature(
                agreement_id=agreement.id,
                user_id=auth.user_id,
                ip_address=ip_address,
                user_agent=(user_agent or "")[:500] or None,
            )
            self.db.add(signature)
            try:
                self.db.flush()
            except IntegrityError:
                raise AlreadySigned()

            base = self.db.query(Agreement).filter(Agreement.id == agreement.id)
            base.update(
                {Agreement.signature_count: Agreement.signature_count + 1},
                synchronize_session=False,
            )
            (
                self.db.query(Agreement)
                .filter(Agreement.id == agreement.id, Agreement.status == AgreementStatus.DRAFT)
                .update({Agreement.status: AgreementStatus.PENDING_SIGNATURES}, synchronize_session=False)
            )
            count = self.db.query(Agreement.signature_count).filter(Agreement.id == agreement.id).scalar()

            settled = False
            won = False
            if count >= len(signers) and signers <= self._signer_ids(agreement.id):
                now = datetime.utcnow()
                won = (
                    self.db.query(Agreement)
                    .filter(Agreement.id == agreement.id, Agreement.status.in_(EDITABLE_STATUSES))
                    .update(
                        {Agreement.status: AgreementStatus.SIGNED, Agreement.signed_at: now},
                        synchronize_session=False,
                    )
                ) == 1
                if won:
                    logger.info(f"Agreement {agreement.id}: all {len(signers)} signature(s) collected")
                    settled = self._settle(case, auth, pending)

            agreement = self._load(agreement.id)
            return SignResult(
                signature=signature,
                agreement=agreement,
                all_signed=agreement.status == AgreementStatus.SIGNED,
                settled_case=settled,
            )

        return self.cases.run(op, "sign agreement")

    def _settle(self, case: Case, auth: AuthContext, pending: List[Any]) -> bool:
        if case.status == CaseStatus.RESOLVED:
            return False
        if case.mediation_start is not None and case.mediation_end is None:
            case.mediation_end = datetime.utcnow()
        if not case.resolution:
            case.resolution = "Settled by signed agreement"
        self.cases.apply_transition(
            case, CaseStatus.RESOLVED, SETTLEMENT_DESCRIPTION, auth.user_id, pending, settlement=True,
        )
        return True

    def _has_signed(self, agreement_id: str, user_id: str) -> bool:
        hit = (
            self.db.query(AgreementSignature.id)
            .filter(AgreementSignature.agreement_id == agreement_id, AgreementSignature.user_id == user_id)
            .first()
        )
        return hit is not None

    def _signer_ids(self, agreement_id: str) -> set:
        rows = (
            self.db.query(AgreementSignature.user_id)
            .filter(AgreementSignature.agreement_id == agreement_id)
            .all()
        )
        return {r[0] for r in rows}

    # =========================================================================
    # Execution and reads
    # =========================================================================

    def execute(self, agreement_id: str, auth: AuthContext) -> Agreement:
        """Mark a signed agreement as carried out."""
        policy.require_admin(auth, "execute agreements")

        def op(pending: List[Any]) -> Agreement:
            agreement = self._load(agreement_id)
            changed = (
                self.db.query(Agreement)
                .filter(Agreement.id == agreement.id, Agreement.status == AgreementStatus.SIGNED)
                .update(
                    {Agreement.status: AgreementStatus.EXECUTED, Agreement.executed_at: datetime.utcnow()},
                    synchronize_session=False,
                )
            )
            if changed != 1:
                raise ValidationFailed(
                    f"Only signed agreements can be executed (agreement is {agreement.status.value})"
                )
            return self._load(agreement.id)

        return self.cases.run(op, "execute agreement")

    def get(self, agreement_id: str, auth: AuthContext) -> Agreement:
        agreement = self._load(agreement_id)
        case = self.cases.load_case(agreement.case_id)
        policy.require_case_view(self.db, auth, case)
        return agreement

    def get_by_case(self, case_id: str, auth: AuthContext) -> Agreement:
        case = self.cases.get_case(case_id, auth)
        agreement = self._for_case(case.id)
        if agreement is None:
            raise NotFound("Agreement not found")
        return agreement
