"""Request helpers shared by the API and webhook tests."""
import hashlib
import hmac
import json
import time

from auth import admin_token, subscriber_token
from models import UserRole

WEBHOOK_SECRET = "whsec_test_secret"


def auth_headers(subscriber: dict) -> dict:
    return {"Authorization": f"Bearer {subscriber_token(subscriber['subscriber_id'], subscriber['email'])}"}


def admin_headers(role: UserRole = UserRole.ROLE_ADMIN) -> dict:
    return {"Authorization": f"Bearer {admin_token('admin-001', 'admin@financetracker.ao', role)}"}


def stripe_event(event_id: str, event_type: str, obj: dict) -> bytes:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }).encode()


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Stripe-Signature header value for `payload`."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"
