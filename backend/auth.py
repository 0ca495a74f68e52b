from passlib.context import CryptContext
from jose import JWTError, jwt
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict
import os
from models import UserRole

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

JWT_SECRET = os.getenv("JWT_SECRET", "your-secret-key-change-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRATION_HOURS = int(os.getenv("JWT_EXPIRATION_HOURS", "24"))

def hash_password(password: str) -> str:
    """Hash a password using bcrypt."""
    return pwd_context.hash(password)

def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its hash."""
    return pwd_context.verify(plain_password, hashed_password)

def create_access_token(data: Dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token."""
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRATION_HOURS)

    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGORITHM)

def decode_access_token(token: str) -> Optional[Dict]:
    """Decode and validate a JWT token."""
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None

def subscriber_token(subscriber_id: int, email: str) -> str:
    return create_access_token({
        "sub": str(subscriber_id),
        "subscriber_id": subscriber_id,
        "email": email,
        "role": UserRole.ROLE_SUBSCRIBER.value,
    })

def admin_token(admin_id: str, email: str, role: UserRole = UserRole.ROLE_ADMIN) -> str:
    return create_access_token({
        "sub": admin_id,
        "admin_id": admin_id,
        "email": email,
        "role": role.value,
    })

def validate_password_strength(password: str) -> tuple[bool, str]:
    """Validate password meets security requirements."""
    if len(password) < 8:
        return False, "Password must be at least 8 characters"
    if not any(c.isupper() for c in password):
        return False, "Password must contain at least one uppercase letter"
    if not any(c.islower() for c in password):
        return False, "Password must contain at least one lowercase letter"
    if not any(c.isdigit() for c in password):
        return False, "Password must contain at least one number"
    return True, "Password is valid"

def check_rbac(user_role: str, required_role: UserRole) -> bool:
    """Check if user has required role."""
    role_hierarchy = {
        UserRole.ROLE_OWNER.value: 3,
        UserRole.ROLE_ADMIN.value: 2,
        UserRole.ROLE_SUBSCRIBER.value: 1,
    }
    return role_hierarchy.get(user_role, 0) >= role_hierarchy.get(required_role.value, 0)
