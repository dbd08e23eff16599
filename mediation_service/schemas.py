"""
Pydantic Schemas for Mediation Service
======================================

Request bodies for the HTTP surface. Responses are plain dicts built in
``api`` from the ORM rows.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from .db.models import AgreementStatus, CaseStatus, CaseType, PanelRole


# =============================================================================
# AUTH
# =============================================================================

class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)
    name: str = Field(..., min_length=1)
    phone: Optional[str] = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: str


# =============================================================================
# CASES
# =============================================================================

class OppositePartyInput(BaseModel):
    name: str = Field(..., min_length=1, description="Opposite party full name")
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class FileCaseRequest(BaseModel):
    """New dispute filed by a verified user"""
    case_type: CaseType
    issue_description: str = Field(..., min_length=1)
    opposite_party: OppositePartyInput
    is_court_pending: bool = False
    case_number: Optional[str] = None
    fir_number: Optional[str] = None
    court_police_station: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "case_type": "family",
                "issue_description": "Dispute over division of inherited property",
                "opposite_party": {"name": "Jane Doe", "phone": "+10000000000"},
                "is_court_pending": False,
            }
        }


class ContactRequest(BaseModel):
    message: Optional[str] = None


class ResponseRequest(BaseModel):
    """Opposite party's answer to the mediation request"""
    response: CaseStatus
    defendant_id: Optional[str] = None
    description: Optional[str] = None

    @field_validator("response")
    @classmethod
    def _accept_or_reject(cls, v: CaseStatus) -> CaseStatus:
        if v not in (CaseStatus.ACCEPTED, CaseStatus.REJECTED):
            raise ValueError("response must be 'accepted' or 'rejected'")
        return v


class PanelMemberInput(BaseModel):
    user_id: str
    role: PanelRole


class FormPanelRequest(BaseModel):
    members: List[PanelMemberInput]


class StartMediationRequest(BaseModel):
    scheduled_at: Optional[datetime] = None
    description: Optional[str] = None


class ResolveRequest(BaseModel):
    outcome: CaseStatus
    details: str = Field(..., min_length=1)

    @field_validator("outcome")
    @classmethod
    def _final_outcome(cls, v: CaseStatus) -> CaseStatus:
        if v not in (CaseStatus.RESOLVED, CaseStatus.UNRESOLVED):
            raise ValueError("outcome must be 'resolved' or 'unresolved'")
        return v


class StatusUpdateRequest(BaseModel):
    status: CaseStatus
    description: Optional[str] = None


# =============================================================================
# AGREEMENTS
# =============================================================================

class CreateAgreementRequest(BaseModel):
    content: str = Field(..., min_length=1)


class EditAgreementRequest(BaseModel):
    content: Optional[str] = None
    status: Optional[AgreementStatus] = None


# =============================================================================
# ADMIN
# =============================================================================

class VerifyUserRequest(BaseModel):
    is_verified: bool = True


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str
    realtime_backend: str
    fanout_mode: str
