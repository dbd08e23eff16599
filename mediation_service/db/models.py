"""
SQLAlchemy Models for Database
==============================

Schema for the mediation workflow:
- Users and their platform roles
- Cases with opposite-party details and an append-only update log
- Expert panels (one per case)
- Agreements and their signatures (one agreement per case)
- Per-recipient notifications

Relationships are resolved through explicit id lookups in the services; the
ORM relationships below are read conveniences only.

Supports both PostgreSQL and SQLite via SQLAlchemy.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    Column, String, Text, Integer, Boolean, DateTime, Enum, ForeignKey,
    UniqueConstraint, Index,
)
from sqlalchemy.orm import relationship, declarative_base

Base = declarative_base()


def generate_uuid():
    return str(uuid.uuid4())


# =============================================================================
# ENUMS
# =============================================================================

class UserRole(str, enum.Enum):
    """Platform role of an account"""
    USER = "user"
    ADMIN = "admin"
    LAWYER = "lawyer"
    RELIGIOUS_SCHOLAR = "religious_scholar"
    SOCIAL_EXPERT = "social_expert"


class PanelRole(str, enum.Enum):
    """Role a member holds on a mediation panel"""
    LAWYER = "lawyer"
    RELIGIOUS_SCHOLAR = "religious_scholar"
    SOCIAL_EXPERT = "social_expert"


class CaseType(str, enum.Enum):
    FAMILY = "family"
    BUSINESS = "business"
    CRIMINAL = "criminal"
    PROPERTY = "property"
    OTHER = "other"


class CaseStatus(str, enum.Enum):
    """Case lifecycle status"""
    PENDING = "pending"
    AWAITING_RESPONSE = "awaiting_response"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    PANEL_CREATED = "panel_created"
    MEDIATION_IN_PROGRESS = "mediation_in_progress"
    RESOLVED = "resolved"
    UNRESOLVED = "unresolved"


class AgreementStatus(str, enum.Enum):
    DRAFT = "draft"
    PENDING_SIGNATURES = "pending_signatures"
    SIGNED = "signed"
    EXECUTED = "executed"


class NotificationCategory(str, enum.Enum):
    CASE_UPDATE = "case_update"
    PANEL_INVITATION = "panel_invitation"
    MEDIATION_SCHEDULED = "mediation_scheduled"
    CASE_RESOLVED = "case_resolved"
    AGREEMENT_READY = "agreement_ready"
    SYSTEM = "system"


# =============================================================================
# USERS
# =============================================================================

class User(Base):
    """Platform account"""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    email = Column(String(255), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    phone = Column(String(50), nullable=True)
    password_hash = Column(String(255), nullable=True)
    role = Column(Enum(UserRole), default=UserRole.USER, nullable=False)
    is_verified = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    last_login = Column(DateTime, nullable=True)

    # Relationships
    panel_memberships = relationship("PanelMember", back_populates="user")


# =============================================================================
# CASES
# =============================================================================

class Case(Base):
    """Filed dispute"""
    __tablename__ = "cases"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    case_type = Column(Enum(CaseType), nullable=False)
    issue_description = Column(Text, nullable=False)
    status = Column(Enum(CaseStatus), default=CaseStatus.PENDING, nullable=False)

    # Court / police references
    is_court_pending = Column(Boolean, default=False, nullable=False)
    case_number = Column(String(100), nullable=True)
    fir_number = Column(String(100), nullable=True)
    court_police_station = Column(String(255), nullable=True)

    plaintiff_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    defendant_id = Column(String(36), ForeignKey("users.id"), nullable=True)

    mediation_start = Column(DateTime, nullable=True)
    mediation_end = Column(DateTime, nullable=True)
    resolution = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Optimistic concurrency stamp; bumped by every flush that updates the row
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_case_status", "status"),
        Index("ix_case_plaintiff", "plaintiff_id"),
        Index("ix_case_defendant", "defendant_id"),
    )

    # Relationships
    plaintiff = relationship("User", foreign_keys=[plaintiff_id])
    defendant = relationship("User", foreign_keys=[defendant_id])
    opposite_party = relationship("OppositeParty", back_populates="case", uselist=False, cascade="all, delete-orphan")
    updates = relationship("CaseUpdate", back_populates="case", order_by="CaseUpdate.seq")


class OppositeParty(Base):
    """Opposite party details, used until a defendant account is bound"""
    __tablename__ = "opposite_parties"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    case_id = Column(String(36), ForeignKey("cases.id", ondelete="CASCADE"), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    address = Column(Text, nullable=True)

    case = relationship("Case", back_populates="opposite_party")


class CaseUpdate(Base):
    """Append-only case timeline entry"""
    __tablename__ = "case_updates"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(36), nullable=False, unique=True, default=generate_uuid)
    case_id = Column(String(36), ForeignKey("cases.id", ondelete="CASCADE"), nullable=False)
    status = Column(Enum(CaseStatus), nullable=False)
    description = Column(Text, nullable=False)
    created_by_user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_case_update_case", "case_id", "seq"),
    )

    case = relationship("Case", back_populates="updates")


# =============================================================================
# PANELS
# =============================================================================

class Panel(Base):
    """Mediation panel; one per case, written once"""
    __tablename__ = "panels"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    case_id = Column(String(36), ForeignKey("cases.id", ondelete="CASCADE"), nullable=False)
    created_by_user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("case_id", name="uq_panel_case"),
    )

    members = relationship("PanelMember", back_populates="panel", cascade="all, delete-orphan")


class PanelMember(Base):
    """Panel seat"""
    __tablename__ = "panel_members"

    panel_id = Column(String(36), ForeignKey("panels.id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    role = Column(Enum(PanelRole), nullable=False)
    added_at = Column(DateTime, default=datetime.utcnow)

    panel = relationship("Panel", back_populates="members")
    user = relationship("User", back_populates="panel_memberships")


# =============================================================================
# AGREEMENTS
# =============================================================================

class Agreement(Base):
    """Settlement agreement; one per case"""
    __tablename__ = "agreements"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    case_id = Column(String(36), ForeignKey("cases.id", ondelete="CASCADE"), nullable=False)
    content = Column(Text, nullable=False)
    status = Column(Enum(AgreementStatus), default=AgreementStatus.DRAFT, nullable=False)
    signature_count = Column(Integer, default=0, nullable=False)
    created_by_user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    signed_at = Column(DateTime, nullable=True)
    executed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("case_id", name="uq_agreement_case"),
    )

    signatures = relationship(
        "AgreementSignature", back_populates="agreement",
        cascade="all, delete-orphan", order_by="AgreementSignature.signed_at",
    )


class AgreementSignature(Base):
    """Recorded assertion of signature (audit only, not cryptographic)"""
    __tablename__ = "agreement_signatures"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    agreement_id = Column(String(36), ForeignKey("agreements.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    signed_at = Column(DateTime, default=datetime.utcnow)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(500), nullable=True)

    __table_args__ = (
        UniqueConstraint("agreement_id", "user_id", name="uq_signature_agreement_user"),
    )

    agreement = relationship("Agreement", back_populates="signatures")


# =============================================================================
# NOTIFICATIONS
# =============================================================================

class Notification(Base):
    """Persisted per-recipient notification"""
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    category = Column(Enum(NotificationCategory), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    is_read = Column(Boolean, default=False, nullable=False)
    case_id = Column(String(36), ForeignKey("cases.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_notification_user_read", "user_id", "is_read"),
        Index("ix_notification_user_created", "user_id", "created_at"),
    )
