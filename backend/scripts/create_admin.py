"""
Create (or re-enable) a staff account for the admin API.

Idempotent: an existing admin with the same email gets the new role and is
set back to ACTIVE; the password is only replaced when --reset-password is
given. Never prints the password.

Usage (from backend/):
  python -m scripts.create_admin --email ops@financetracker.ao --password 'S3cure!pass'
  python -m scripts.create_admin --email owner@financetracker.ao --role owner --password ... --reset-password
"""

import asyncio
import argparse
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv
load_dotenv(Path(__file__).resolve().parent.parent / ".env")

from auth import hash_password, validate_password_strength
from database import get_db_context
from models import AuditAction, UserRole
from utils.audit import create_audit_log
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

ROLES = {"admin": UserRole.ROLE_ADMIN, "owner": UserRole.ROLE_OWNER}


async def create_admin(email: str, password: str, role: UserRole, reset_password: bool = False) -> str:
    """Returns "created", "updated" or "unchanged"."""
    email_lower = email.strip().lower()
    async with get_db_context() as db:
        existing = await db.admin_users.find_one({"email": email_lower}, {"_id": 0})
        now = datetime.now(timezone.utc)
        if existing:
            if not reset_password and existing.get("role") == role.value and existing.get("status") == "ACTIVE":
                logger.info("Admin %s already %s and ACTIVE; no change.", email_lower, role.value)
                return "unchanged"
            changes = {"role": role.value, "status": "ACTIVE", "updated_at": now}
            if reset_password:
                changes["password_hash"] = hash_password(password)
            await db.admin_users.update_one({"email": email_lower}, {"$set": changes})
            logger.info("Updated admin %s (admin_id=%s role=%s)", email_lower, existing["admin_id"], role.value)
            return "updated"

        admin_id = f"admin-{uuid.uuid4().hex[:12]}"
        await db.admin_users.insert_one({
            "admin_id": admin_id,
            "email": email_lower,
            "password_hash": hash_password(password),
            "role": role.value,
            "status": "ACTIVE",
            "created_at": now,
        })
        await create_audit_log(
            action=AuditAction.ADMIN_CREATED,
            actor_role=UserRole.ROLE_SYSTEM,
            resource_type="admin_user",
            resource_id=admin_id,
            metadata={"email": email_lower, "role": role.value},
        )
        logger.info("Created admin %s (admin_id=%s role=%s)", email_lower, admin_id, role.value)
        return "created"


def main():
    parser = argparse.ArgumentParser(description="Create or re-enable an admin account")
    parser.add_argument("--email", required=True, help="Login email")
    parser.add_argument("--password", required=True, help="Initial password")
    parser.add_argument("--role", choices=sorted(ROLES), default="admin")
    parser.add_argument("--reset-password", action="store_true", help="Replace the password of an existing admin")
    args = parser.parse_args()

    ok, message = validate_password_strength(args.password)
    if not ok:
        parser.error(message)
    asyncio.run(create_admin(args.email, args.password, ROLES[args.role], args.reset_password))
    return 0


if __name__ == "__main__":
    sys.exit(main())
