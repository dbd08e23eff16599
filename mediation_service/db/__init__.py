"""
Database Package - SQLAlchemy
=============================

Persistence layer for the mediation workflow.
"""

from .models import (
    Base,
    User, Case, OppositeParty, CaseUpdate,
    Panel, PanelMember,
    Agreement, AgreementSignature,
    Notification,
    UserRole, PanelRole, CaseType, CaseStatus, AgreementStatus, NotificationCategory,
)
from .session import get_db, get_db_session, init_db, drop_db, get_engine, reset_engine

__all__ = [
    # Base
    "Base",
    # Entities
    "User", "Case", "OppositeParty", "CaseUpdate",
    "Panel", "PanelMember",
    "Agreement", "AgreementSignature",
    "Notification",
    # Enums
    "UserRole", "PanelRole", "CaseType", "CaseStatus", "AgreementStatus", "NotificationCategory",
    # Session
    "get_db", "get_db_session", "init_db", "drop_db", "get_engine", "reset_engine",
]
