"""Gateway webhook processing (Stripe).

Stripe delivers at least once, possibly out of order. Each event is applied
at most once:
- signature verified with STRIPE_WEBHOOK_SECRET
- `gateway_events` holds one row per event_id (unique index); for events
  with an effect the row is written inside the same MongoDB transaction as
  the effect, so a replay either sees the row or aborts on the duplicate key
- an event aimed at a payment that is already terminal is recorded IGNORED

Handled events:
- checkout.session.completed (paid) / checkout.session.async_payment_succeeded -> complete
- checkout.session.expired -> expired
- checkout.session.async_payment_failed / payment_intent.payment_failed -> failed
- invoice.payment_failed -> subscription past_due
- invoice.paid -> subscription recovered
"""
import json
import logging
import os
from typing import Any, Dict, Optional, Tuple

import stripe
from pymongo.errors import DuplicateKeyError

from database import database
from models import AuditAction, CompletionSource, GatewayEventStatus, UserRole
from services.billing_errors import ExpiredError, InvalidStateError, NotFoundError
from services.payment_service import payment_service
from services.subscription_service import subscription_service
from utils import clock
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

PAID_SESSION_STATUSES = frozenset({"paid", "no_payment_required"})


def _webhook_secret() -> str:
    return (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip()


def _allow_unsigned() -> bool:
    return os.getenv("ALLOW_UNSIGNED_WEBHOOKS", "").lower() in ("1", "true", "yes")


def _transaction_id_from(obj: Dict[str, Any]) -> Optional[int]:
    raw = (obj.get("metadata") or {}).get("transaction_id") or obj.get("client_reference_id")
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


def _subscriber_id_from(obj: Dict[str, Any]) -> Optional[int]:
    metadata = obj.get("metadata") or {}
    if not metadata.get("subscriber_id"):
        metadata = ((obj.get("subscription_details") or {}).get("metadata")) or {}
    try:
        return int(metadata["subscriber_id"]) if metadata.get("subscriber_id") else None
    except (TypeError, ValueError):
        return None


class GatewayWebhookService:

    def verify(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Return the event as a plain dict; raises ValueError or stripe.SignatureVerificationError."""
        secret = _webhook_secret()
        if secret:
            stripe.Webhook.construct_event(payload, signature or "", secret)
        elif _allow_unsigned():
            logger.warning("STRIPE_WEBHOOK_SECRET not set - skipping signature verification")
        else:
            raise ValueError("Webhook secret not configured")
        return json.loads(payload)

    async def process_webhook(self, payload: bytes, signature: Optional[str]) -> Tuple[bool, str, Dict[str, Any]]:
        """
        Main webhook entry point.

        Returns:
            (accepted, message, details); accepted=False means the request
            itself was invalid (bad signature / payload).
        """
        try:
            event = self.verify(payload, signature)
        except stripe.SignatureVerificationError as e:
            logger.error(f"Webhook signature verification failed: {e}")
            return False, "Invalid signature", {"error": str(e)}
        except ValueError as e:
            logger.error(f"Webhook parse error: {e}")
            return False, "Invalid payload", {"error": str(e)}

        event_id = event.get("id")
        event_type = event.get("type")
        if not event_id or not event_type:
            return False, "Invalid payload", {"error": "missing id or type"}
        obj = (event.get("data") or {}).get("object") or {}
        logger.info(f"WEBHOOK_RECEIVED event_id={event_id} event_type={event_type}")

        db = database.get_db()
        if await db.gateway_events.find_one({"event_id": event_id}):
            logger.info(f"Event {event_id} already processed - skipping")
            return True, "Already processed", {"event_id": event_id}

        ref = {"event_id": event_id, "event_type": event_type}
        try:
            if event_type in ("checkout.session.completed", "checkout.session.async_payment_succeeded"):
                if obj.get("payment_status") not in PAID_SESSION_STATUSES:
                    return await self._ignore(ref, None, "session not paid yet")
                return await self._apply(ref, obj, lambda tid: payment_service.complete(
                    tid, CompletionSource.GATEWAY, external_event=ref
                ))
            if event_type == "checkout.session.expired":
                return await self._apply(ref, obj, lambda tid: payment_service.expire(tid, external_event=ref))
            if event_type in ("checkout.session.async_payment_failed", "payment_intent.payment_failed"):
                reason = ((obj.get("last_payment_error") or {}).get("message")) or event_type
                return await self._apply(ref, obj, lambda tid: payment_service.fail(tid, reason, external_event=ref))
            if event_type == "invoice.payment_failed":
                return await self._subscription_signal(ref, obj, past_due=True)
            if event_type == "invoice.paid":
                return await self._subscription_signal(ref, obj, past_due=False)
        except DuplicateKeyError:
            logger.info(f"Event {event_id} duplicate insert (race) - skipping")
            return True, "Already processed", {"event_id": event_id}

        return await self._ignore(ref, None, "unhandled event type")

    async def _apply(self, ref: Dict[str, Any], obj: Dict[str, Any], effect) -> Tuple[bool, str, Dict[str, Any]]:
        transaction_id = _transaction_id_from(obj)
        if transaction_id is None:
            return await self._ignore(ref, None, "no transaction reference")
        try:
            updated = await effect(transaction_id)
        except (InvalidStateError, ExpiredError, NotFoundError) as e:
            # Replayed or late event for a payment that cannot move any more
            return await self._ignore(ref, transaction_id, e.message)
        return True, "Processed", {
            "event_id": ref["event_id"],
            "transaction_id": transaction_id,
            "status": updated["status"],
        }

    async def _subscription_signal(self, ref: Dict[str, Any], obj: Dict[str, Any], past_due: bool):
        subscriber_id = _subscriber_id_from(obj)
        if subscriber_id is None:
            return await self._ignore(ref, None, "no subscriber reference")
        try:
            if past_due:
                await subscription_service.mark_past_due(subscriber_id, reason="invoice_payment_failed")
            else:
                await subscription_service.recover(subscriber_id)
        except (InvalidStateError, NotFoundError) as e:
            return await self._ignore(ref, None, e.message)
        await self._record(ref, None, GatewayEventStatus.PROCESSED)
        return True, "Processed", {"event_id": ref["event_id"], "subscriber_id": subscriber_id}

    async def _record(self, ref: Dict[str, Any], transaction_id: Optional[int], status: GatewayEventStatus) -> None:
        db = database.get_db()
        await db.gateway_events.insert_one({
            "event_id": ref["event_id"],
            "event_type": ref["event_type"],
            "status": status.value,
            "transaction_id": transaction_id,
            "received_at": clock.utcnow(),
        })

    async def _ignore(self, ref: Dict[str, Any], transaction_id: Optional[int], reason: str):
        try:
            await self._record(ref, transaction_id, GatewayEventStatus.IGNORED)
        except DuplicateKeyError:
            return True, "Already processed", {"event_id": ref["event_id"]}
        await create_audit_log(
            action=AuditAction.WEBHOOK_IGNORED,
            actor_role=UserRole.ROLE_SYSTEM,
            resource_type="gateway_event",
            resource_id=ref["event_id"],
            metadata={"event_type": ref["event_type"], "transaction_id": transaction_id, "reason": reason},
        )
        logger.info(f"WEBHOOK_IGNORED event_id={ref['event_id']} reason={reason}")
        return True, "Ignored", {"event_id": ref["event_id"], "reason": reason}


gateway_webhook_service = GatewayWebhookService()
