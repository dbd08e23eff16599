"""
Authentication Module with JWT Support
======================================

Identity is an external collaborator for the mediation workflow: this module
only turns a bearer token (or the legacy X-User-Id header) into an
``AuthContext`` principal carrying the account role.

Platform roles:
- admin: runs the mediation workflow (contact, panels, mediation, resolution)
- lawyer / religious_scholar / social_expert: eligible panel members
- user: files and takes part in cases

Case-level checks (party, panel member, required signer) live in ``policy``.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from .config import get_settings
from .db.models import User, UserRole

logger = logging.getLogger(__name__)


# =============================================================================
# PASSWORD HASHING
# =============================================================================

# bcrypt truncates passwords at 72 bytes; enforce to avoid 500s.
MAX_PASSWORD_BYTES = 72

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def is_password_too_long(password: str) -> bool:
    """Return True if password exceeds bcrypt 72-byte limit."""
    return len(password.encode("utf-8")) > MAX_PASSWORD_BYTES


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against a hash"""
    if is_password_too_long(plain_password):
        logger.warning("Auth failed: password exceeds bcrypt 72-byte limit")
        return False
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError as e:
        logger.warning(f"Auth failed: invalid password format ({e})")
        return False


def get_password_hash(password: str) -> str:
    """Hash a password"""
    if is_password_too_long(password):
        raise ValueError("Password exceeds bcrypt 72-byte limit")
    return pwd_context.hash(password)


# =============================================================================
# JWT TOKEN HANDLING
# =============================================================================

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token"""
    settings = get_settings()
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=settings.jwt_access_token_expire_minutes))
    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Optional[dict]:
    """Decode and validate a JWT token"""
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError as e:
        logger.warning(f"Invalid JWT token: {e}")
        return None


# =============================================================================
# AUTH CONTEXT
# =============================================================================

@dataclass
class AuthContext:
    """Authenticated principal for a request"""
    user_id: str
    email: str
    name: str
    role: UserRole
    is_verified: bool

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @classmethod
    def from_user(cls, user: User) -> "AuthContext":
        return cls(
            user_id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            is_verified=bool(user.is_verified),
        )


# =============================================================================
# AUTH SERVICE
# =============================================================================

class AuthService:
    """Resolves principals from the user table"""

    def __init__(self, db: Session):
        self.db = db

    def get_auth_context(self, user_id: str) -> Optional[AuthContext]:
        """
        Build auth context for a user.

        Args:
            user_id: User ID from JWT token or X-User-Id header

        Returns:
            AuthContext if user exists and is active, None otherwise
        """
        user = self.db.query(User).filter(User.id == user_id).first()
        if not user or not user.is_active:
            logger.warning(f"Auth failed: user {user_id} not found or inactive")
            return None
        return AuthContext.from_user(user)

    def authenticate_user(self, email: str, password: str) -> Optional[AuthContext]:
        """
        Authenticate a user by email and password.

        Returns:
            AuthContext if authentication succeeds, None otherwise
        """
        user = self.db.query(User).filter(User.email == email, User.is_active == True).first()  # noqa: E712
        if not user:
            logger.warning(f"Auth failed: email {email} not found")
            return None

        if not user.password_hash:
            logger.warning(f"Auth failed: user {user.id} has no password set")
            return None

        if not verify_password(password, user.password_hash):
            logger.warning(f"Auth failed: invalid password for user {user.id}")
            return None

        user.last_login = datetime.utcnow()
        self.db.commit()
        return AuthContext.from_user(user)

    def register_user(self, email: str, name: str, password: str, phone: Optional[str] = None) -> User:
        """Create a regular, unverified account. Admins verify it later."""
        user = User(
            email=email,
            name=name,
            phone=phone,
            password_hash=get_password_hash(password),
            role=UserRole.USER,
            is_verified=False,
            is_active=True,
        )
        self.db.add(user)
        self.db.commit()
        self.db.refresh(user)
        logger.info(f"Registered user {user.id}")
        return user


def get_auth_service(db: Session) -> AuthService:
    """Get AuthService instance for a database session"""
    return AuthService(db)
