"""
MyInventory Security Utilities

JWT handling, password hashing, roles and plan features.
"""

from datetime import datetime, timedelta

from jose import JWTError, jwt
from passlib.context import CryptContext

from core.config import get_settings

# Password hashing
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

ADMIN_ROLES = frozenset({"super_admin", "admin_rede"})
VALID_ROLES = ADMIN_ROLES | {"gerente", "operador"}

# Feature flags unlocked by each subscription plan
PLAN_FEATURES: dict[str, frozenset[str]] = {
    "starter": frozenset({"has_expiry_analytics"}),
    "professional": frozenset({"has_expiry_analytics", "has_risk_scoring", "has_ml"}),
    "enterprise": frozenset({"has_expiry_analytics", "has_risk_scoring", "has_ml"}),
}


def hash_password(password: str) -> str:
    """Hash a password for storage."""
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its hash."""
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """Create a JWT access token."""
    settings = get_settings()
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(hours=settings.access_token_hours))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> dict | None:
    """Decode and validate a locally issued JWT. Returns None when invalid or expired."""
    settings = get_settings()
    try:
        return jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        return None


def is_admin(role: str | None) -> bool:
    return role in ADMIN_ROLES


def plan_has_feature(plan: str | None, feature: str) -> bool:
    """Whether a subscription plan unlocks a feature flag."""
    return feature in PLAN_FEATURES.get((plan or "").lower(), frozenset())
