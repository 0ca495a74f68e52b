from fastapi import APIRouter, HTTPException, status
from database import database
from models import LoginRequest, SignupRequest, TokenResponse, UserRole, AuditAction
from auth import verify_password, hash_password, subscriber_token, admin_token, validate_password_strength
from services.billing_errors import ValidationError
from services.subscription_service import subscription_service
from utils.audit import create_audit_log
from datetime import datetime, timezone
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/auth", tags=["auth"])

STAFF_ROLES = (UserRole.ROLE_OWNER.value, UserRole.ROLE_ADMIN.value)

@router.post("/signup", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
async def signup(body: SignupRequest):
    """Create a subscriber and start the trial on the chosen plan."""
    ok, message = validate_password_strength(body.password)
    if not ok:
        raise ValidationError(message, error_code="WEAK_PASSWORD")

    profile = {
        "email": body.email.lower(),
        "first_name": body.first_name,
        "last_name": body.last_name,
        "phone": body.phone,
        "password_hash": hash_password(body.password),
    }
    subscriber = await subscription_service.start_trial(profile, body.plan_type)

    await create_audit_log(
        action=AuditAction.SUBSCRIBER_SIGNUP,
        actor_role=UserRole.ROLE_SUBSCRIBER,
        actor_id=str(subscriber["subscriber_id"]),
        subscriber_id=subscriber["subscriber_id"],
    )
    return TokenResponse(
        access_token=subscriber_token(subscriber["subscriber_id"], subscriber["email"]),
        user={
            "subscriber_id": subscriber["subscriber_id"],
            "email": subscriber["email"],
            "role": UserRole.ROLE_SUBSCRIBER.value,
            "subscription_status": subscriber["subscription_status"],
            "plan_type": subscriber["plan_type"],
            "trial_ends_at": subscriber["trial_ends_at"].isoformat(),
        },
    )

@router.post("/login", response_model=TokenResponse)
async def login(credentials: LoginRequest):
    """Subscriber login endpoint."""
    db = database.get_db()
    subscriber = await db.subscribers.find_one({"email": credentials.email.lower()}, {"_id": 0})

    if not subscriber or not verify_password(credentials.password, subscriber.get("password_hash") or ""):
        await create_audit_log(
            action=AuditAction.USER_LOGIN_FAILED,
            metadata={"email": credentials.email, "portal": "subscriber"}
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials"
        )

    await db.subscribers.update_one(
        {"subscriber_id": subscriber["subscriber_id"]},
        {"$set": {"last_login": datetime.now(timezone.utc)}}
    )
    await create_audit_log(
        action=AuditAction.USER_LOGIN_SUCCESS,
        actor_role=UserRole.ROLE_SUBSCRIBER,
        actor_id=str(subscriber["subscriber_id"]),
        subscriber_id=subscriber["subscriber_id"],
    )
    return TokenResponse(
        access_token=subscriber_token(subscriber["subscriber_id"], subscriber["email"]),
        user={
            "subscriber_id": subscriber["subscriber_id"],
            "email": subscriber["email"],
            "role": UserRole.ROLE_SUBSCRIBER.value,
            "subscription_status": subscriber["subscription_status"],
            "plan_type": subscriber["plan_type"],
        },
    )

@router.post("/admin/login", response_model=TokenResponse)
async def admin_login(credentials: LoginRequest):
    """Staff login endpoint (ROLE_ADMIN / ROLE_OWNER)."""
    db = database.get_db()
    admin = await db.admin_users.find_one({"email": credentials.email.lower()}, {"_id": 0})

    if not admin or not verify_password(credentials.password, admin.get("password_hash") or ""):
        await create_audit_log(
            action=AuditAction.USER_LOGIN_FAILED,
            metadata={"email": credentials.email, "portal": "admin"}
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials"
        )

    if admin.get("status", "ACTIVE") != "ACTIVE" or admin.get("role") not in STAFF_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is not active"
        )

    role = UserRole(admin["role"])
    await create_audit_log(
        action=AuditAction.USER_LOGIN_SUCCESS,
        actor_role=role,
        actor_id=admin["admin_id"],
    )
    return TokenResponse(
        access_token=admin_token(admin["admin_id"], admin["email"], role),
        user={"admin_id": admin["admin_id"], "email": admin["email"], "role": role.value},
    )
