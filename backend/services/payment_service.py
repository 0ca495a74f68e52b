"""Payment Transaction Manager.

Two payment families share one transaction record but follow different
state machines:

    automated: created -> redirected -> completed | failed
    manual:    created -> awaiting_proof -> submitted -> under_review -> completed | rejected

Manual: created | awaiting_proof -> expired once expires_at has passed
(evaluated lazily on read, no sweeper). Automated payments carry no
expires_at and expire only on the gateway's session-expired event.
Either family: created -> completed when there is nothing to collect
(final amount 0). Terminal states (completed, failed, rejected, expired)
accept no further transition.

Every status change is a conditional update on the expected source status.
Completion runs as one MongoDB transaction: gateway event record, status,
coupon redemption, proof decision and subscription activation commit or
abort together.
"""
import logging
import os
from datetime import timedelta
from typing import Any, Dict, FrozenSet, List, Mapping, Optional

from pydantic import TypeAdapter
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import database
from models import (
    AuditAction,
    AutomatedPaymentMethod,
    CompletionSource,
    EmailTemplateAlias,
    ManualPaymentMethod,
    PaymentFamily,
    PaymentMethod,
    PaymentProofRequest,
    PaymentStatus,
    PENDING_REVIEW_STATUSES,
    PlanType,
    ProofDecision,
    TERMINAL_PAYMENT_STATUSES,
    UserRole,
)
from services.billing_errors import (
    ConcurrencyConflictError,
    ExpiredError,
    ExternalDependencyError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from services.campaign_service import campaign_service
from services.notification_service import notification_service
from services.payment_gateway import GatewayError, payment_gateway
from services.plan_catalog import plan_catalog
from services.sequence_service import next_value, payment_reference
from services.subscription_service import subscription_service
from utils import clock
from utils.audit import create_audit_log
from utils.money import ZERO, money_str, to_money

logger = logging.getLogger(__name__)

PAYMENT_PROOF_WINDOW_HOURS = int(os.getenv("PAYMENT_PROOF_WINDOW_HOURS", "24"))

# Manual payments still waiting on the subscriber lapse; proof under review never does
LAZY_EXPIRY_STATUSES = frozenset({
    PaymentStatus.CREATED,
    PaymentStatus.AWAITING_PROOF,
})

NEXT_ACTIONS = {
    PaymentStatus.AWAITING_PROOF: "submit_proof",
    PaymentStatus.REDIRECTED: "complete_checkout",
    PaymentStatus.SUBMITTED: "wait_for_review",
    PaymentStatus.UNDER_REVIEW: "wait_for_review",
    PaymentStatus.FAILED: "retry",
    PaymentStatus.EXPIRED: "retry",
    PaymentStatus.REJECTED: "contact_support",
}

_payment_method_adapter = TypeAdapter(PaymentMethod)


class PaymentFlow:
    """Transition table for one payment family."""
    family: PaymentFamily
    initial_status: PaymentStatus
    transitions: Mapping[PaymentStatus, FrozenSet[PaymentStatus]] = {}

    def can_transition(self, current: PaymentStatus, target: PaymentStatus) -> bool:
        return target in self.transitions.get(current, frozenset())

    def ensure(self, current: PaymentStatus, target: PaymentStatus, transaction_id: int) -> None:
        if current == PaymentStatus.EXPIRED:
            raise ExpiredError(
                f"Payment {transaction_id} has expired; start a new payment",
                transaction_id=transaction_id,
            )
        if not self.can_transition(current, target):
            raise InvalidStateError(
                f"Payment {transaction_id} cannot move from {current.value} to {target.value}",
                error_code="INVALID_TRANSITION",
                transaction_id=transaction_id,
                status=current.value,
            )


class AutomatedFlow(PaymentFlow):
    family = PaymentFamily.AUTOMATED
    initial_status = PaymentStatus.CREATED
    transitions = {
        PaymentStatus.CREATED: frozenset({
            PaymentStatus.REDIRECTED,
            PaymentStatus.COMPLETED,
            PaymentStatus.FAILED,
            PaymentStatus.EXPIRED,
        }),
        PaymentStatus.REDIRECTED: frozenset({
            PaymentStatus.COMPLETED,
            PaymentStatus.FAILED,
            PaymentStatus.EXPIRED,
        }),
    }


class ManualFlow(PaymentFlow):
    family = PaymentFamily.MANUAL
    initial_status = PaymentStatus.AWAITING_PROOF
    transitions = {
        PaymentStatus.CREATED: frozenset({
            PaymentStatus.AWAITING_PROOF,
            PaymentStatus.COMPLETED,
            PaymentStatus.EXPIRED,
        }),
        PaymentStatus.AWAITING_PROOF: frozenset({PaymentStatus.SUBMITTED, PaymentStatus.EXPIRED}),
        PaymentStatus.SUBMITTED: frozenset({PaymentStatus.UNDER_REVIEW}),
        PaymentStatus.UNDER_REVIEW: frozenset({PaymentStatus.COMPLETED, PaymentStatus.REJECTED}),
    }


FLOWS = {
    PaymentFamily.AUTOMATED: AutomatedFlow(),
    PaymentFamily.MANUAL: ManualFlow(),
}


def flow_for(transaction: Dict[str, Any]) -> PaymentFlow:
    return FLOWS[PaymentFamily(transaction["payment_family"])]


def _history(from_status: Optional[PaymentStatus], to_status: PaymentStatus, source: str) -> Dict[str, Any]:
    return {
        "from": from_status.value if from_status else None,
        "to": to_status.value,
        "at": clock.utcnow(),
        "source": source,
    }


def public_transaction(transaction: Dict[str, Any]) -> Dict[str, Any]:
    txn = {k: v for k, v in transaction.items() if k != "_id"}
    status = PaymentStatus(txn["status"])
    if status == PaymentStatus.CREATED and txn.get("payment_family") == PaymentFamily.AUTOMATED.value:
        txn["next_action"] = "retry_checkout"
    else:
        txn["next_action"] = NEXT_ACTIONS.get(status)
    return txn


class PaymentService:

    # ------------------------------------------------------------------
    # Payment methods
    # ------------------------------------------------------------------

    async def get_method(self, name: str):
        db = database.get_db()
        doc = await db.payment_methods.find_one({"name": name}, {"_id": 0})
        if not doc:
            raise ValidationError(f"Unknown payment method: {name}", error_code="INVALID_PAYMENT_METHOD")
        method = _payment_method_adapter.validate_python(doc)
        if not method.is_active:
            raise ValidationError(f"Payment method {name} is not available", error_code="PAYMENT_METHOD_INACTIVE")
        return method

    async def list_methods(self, include_inactive: bool = False) -> List[Any]:
        db = database.get_db()
        query = {} if include_inactive else {"is_active": True}
        docs = await db.payment_methods.find(query, {"_id": 0}).sort("display_order", 1).to_list(length=50)
        return [_payment_method_adapter.validate_python(d) for d in docs]

    async def update_method(self, name: str, updates: Dict[str, Any], actor_id: str):
        db = database.get_db()
        changes = {k: v for k, v in updates.items() if v is not None}
        if not changes:
            raise ValidationError("No changes supplied")
        changes["updated_at"] = clock.utcnow()
        doc = await db.payment_methods.find_one_and_update(
            {"name": name},
            {"$set": changes},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            raise NotFoundError(f"Payment method not found: {name}", error_code="PAYMENT_METHOD_NOT_FOUND")
        await create_audit_log(
            action=AuditAction.PAYMENT_METHOD_UPDATED,
            actor_role=UserRole.ROLE_ADMIN,
            actor_id=actor_id,
            resource_type="payment_method",
            resource_id=name,
            metadata={"fields": sorted(k for k in changes if k != "updated_at")},
        )
        return _payment_method_adapter.validate_python(doc)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_payment(
        self,
        subscriber_id: int,
        plan_type: PlanType,
        method_name: str,
        coupon_code: Optional[str] = None,
    ) -> Dict[str, Any]:
        subscriber = await subscription_service.load_current(subscriber_id)
        plan = await plan_catalog.get_plan(plan_type)
        if not plan.is_active:
            raise ValidationError(f"Plan {plan_type.value} is not available", error_code="PLAN_INACTIVE")
        method = await self.get_method(method_name)

        amount = plan.price
        discount = ZERO
        campaign = None
        if coupon_code:
            quote = await campaign_service.quote(coupon_code, plan)
            discount = quote.discount_amount
            campaign = quote.campaign
        final_amount = amount - discount

        family = PaymentFamily(method.family)
        flow = FLOWS[family]
        transaction_id = await next_value("transaction_id")
        now = clock.utcnow()
        expires_at = None
        if family == PaymentFamily.MANUAL:
            expires_at = now + timedelta(hours=PAYMENT_PROOF_WINDOW_HOURS)

        history = [_history(None, PaymentStatus.CREATED, "create")]
        status = PaymentStatus.CREATED
        if final_amount > ZERO and flow.initial_status != PaymentStatus.CREATED:
            history.append(_history(PaymentStatus.CREATED, flow.initial_status, "create"))
            status = flow.initial_status

        transaction = {
            "transaction_id": transaction_id,
            "subscriber_id": subscriber_id,
            "plan_type": plan.plan_type.value,
            "payment_method": method.name,
            "payment_family": family.value,
            "amount": money_str(amount),
            "discount_amount": money_str(discount),
            "final_amount": money_str(final_amount),
            "currency": plan.currency,
            "campaign_id": campaign["campaign_id"] if campaign else None,
            "coupon_code": campaign["coupon_code"] if campaign else None,
            "status": status.value,
            "payment_reference": payment_reference(transaction_id),
            "external_reference": None,
            "redirect_url": None,
            "created_at": now,
            "expires_at": expires_at,
            "processed_at": None,
            "failure_reason": None,
            "status_history": history,
        }
        db = database.get_db()
        async with database.transaction() as session:
            if campaign is not None:
                await campaign_service.reserve(campaign["campaign_id"], session=session)
            await db.payment_transactions.insert_one(transaction, session=session)

        await create_audit_log(
            action=AuditAction.PAYMENT_CREATED,
            actor_role=UserRole.ROLE_SUBSCRIBER,
            actor_id=str(subscriber_id),
            subscriber_id=subscriber_id,
            resource_type="payment_transaction",
            resource_id=str(transaction_id),
            metadata={
                "plan_type": plan.plan_type.value,
                "payment_method": method.name,
                "final_amount": transaction["final_amount"],
                "coupon_code": transaction["coupon_code"],
            },
        )
        logger.info(
            f"PAYMENT_CREATED transaction_id={transaction_id} subscriber_id={subscriber_id} "
            f"family={family.value} final_amount={transaction['final_amount']}"
        )

        if final_amount == ZERO:
            completed = await self.complete(transaction_id, CompletionSource.ZERO_AMOUNT)
            return public_transaction(completed)

        if isinstance(method, AutomatedPaymentMethod):
            return await self._begin_checkout(transaction, plan.name, subscriber.get("email"))

        result = public_transaction(transaction)
        result["instructions"] = method.render_instructions(transaction["final_amount"], transaction["payment_reference"])
        result["bank_accounts"] = [b.model_dump() for b in method.bank_accounts]
        result["requires_phone_number"] = method.requires_phone_number
        return result

    async def _begin_checkout(self, transaction: Dict[str, Any], plan_name: str, email: Optional[str]) -> Dict[str, Any]:
        db = database.get_db()
        transaction_id = transaction["transaction_id"]
        try:
            session = await payment_gateway.begin_checkout(transaction, plan_name, email)
        except GatewayError as e:
            await db.payment_transactions.update_one(
                {"transaction_id": transaction_id},
                {"$set": {"last_checkout_error": str(e), "last_checkout_attempt_at": clock.utcnow()}},
            )
            await create_audit_log(
                action=AuditAction.PAYMENT_CHECKOUT_FAILED,
                actor_role=UserRole.ROLE_SYSTEM,
                subscriber_id=transaction["subscriber_id"],
                resource_type="payment_transaction",
                resource_id=str(transaction_id),
                metadata={"error": str(e)},
            )
            raise ExternalDependencyError(
                "Payment gateway is unavailable, please retry",
                error_code="GATEWAY_UNAVAILABLE",
                transaction_id=transaction_id,
                action="retry",
            )

        updated = await db.payment_transactions.find_one_and_update(
            {"transaction_id": transaction_id, "status": PaymentStatus.CREATED.value},
            {
                "$set": {
                    "status": PaymentStatus.REDIRECTED.value,
                    "external_reference": session.checkout_id,
                    "redirect_url": session.redirect_url,
                    "last_checkout_error": None,
                    "last_checkout_attempt_at": clock.utcnow(),
                },
                "$push": {"status_history": _history(PaymentStatus.CREATED, PaymentStatus.REDIRECTED, "checkout")},
            },
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            # A webhook or expiry got there first; report the stored state
            return public_transaction(await self._load(transaction_id))

        await create_audit_log(
            action=AuditAction.PAYMENT_CHECKOUT_STARTED,
            actor_role=UserRole.ROLE_SYSTEM,
            subscriber_id=transaction["subscriber_id"],
            resource_type="payment_transaction",
            resource_id=str(transaction_id),
            metadata={"checkout_id": session.checkout_id},
        )
        return public_transaction(updated)

    async def retry_checkout(self, transaction_id: int, subscriber_id: int) -> Dict[str, Any]:
        transaction = await self.get_transaction(transaction_id, subscriber_id)
        status = PaymentStatus(transaction["status"])
        if status == PaymentStatus.EXPIRED:
            raise ExpiredError(f"Payment {transaction_id} has expired; start a new payment", transaction_id=transaction_id)
        if transaction["payment_family"] != PaymentFamily.AUTOMATED.value or status != PaymentStatus.CREATED:
            raise InvalidStateError(
                f"Checkout can only be retried for a card payment in created state (is {status.value})",
                error_code="INVALID_TRANSITION",
                transaction_id=transaction_id,
            )
        subscriber = await subscription_service.get_subscriber(subscriber_id)
        plan = await plan_catalog.get_plan(transaction["plan_type"])
        return await self._begin_checkout(transaction, plan.name, subscriber.get("email"))

    # ------------------------------------------------------------------
    # Reads (with lazy expiry)
    # ------------------------------------------------------------------

    async def _load(self, transaction_id: int, session=None) -> Dict[str, Any]:
        db = database.get_db()
        transaction = await db.payment_transactions.find_one(
            {"transaction_id": transaction_id}, {"_id": 0}, session=session
        )
        if not transaction:
            raise NotFoundError(f"Payment not found: {transaction_id}", error_code="PAYMENT_NOT_FOUND")
        return transaction

    async def _expire_if_due(self, transaction: Dict[str, Any]) -> Dict[str, Any]:
        status = PaymentStatus(transaction["status"])
        expires_at = clock.ensure_utc(transaction.get("expires_at"))
        now = clock.utcnow()
        if transaction.get("payment_family") != PaymentFamily.MANUAL.value:
            return transaction
        if status not in LAZY_EXPIRY_STATUSES or expires_at is None or now <= expires_at:
            return transaction

        db = database.get_db()
        updated = await db.payment_transactions.find_one_and_update(
            {"transaction_id": transaction["transaction_id"], "status": status.value, "expires_at": {"$lt": now}},
            {
                "$set": {"status": PaymentStatus.EXPIRED.value, "expired_at": now},
                "$push": {"status_history": _history(status, PaymentStatus.EXPIRED, "lazy_expiry")},
            },
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            return await self._load(transaction["transaction_id"])
        self._after_expired(updated)
        return updated

    def _after_expired(self, transaction: Dict[str, Any]) -> None:
        logger.info(f"PAYMENT_EXPIRED transaction_id={transaction['transaction_id']}")
        notification_service.notify(
            transaction["subscriber_id"],
            EmailTemplateAlias.PAYMENT_EXPIRED,
            payment_reference=transaction["payment_reference"],
        )

    async def get_transaction(self, transaction_id: int, subscriber_id: Optional[int] = None) -> Dict[str, Any]:
        transaction = await self._load(transaction_id)
        if subscriber_id is not None and transaction["subscriber_id"] != subscriber_id:
            raise NotFoundError(f"Payment not found: {transaction_id}", error_code="PAYMENT_NOT_FOUND")
        return await self._expire_if_due(transaction)

    async def list_for_subscriber(self, subscriber_id: int, limit: int = 50) -> List[Dict[str, Any]]:
        db = database.get_db()
        docs = await db.payment_transactions.find(
            {"subscriber_id": subscriber_id}, {"_id": 0}
        ).sort("created_at", -1).limit(limit).to_list(length=limit)
        return [await self._expire_if_due(d) for d in docs]

    async def list_pending_review(self, limit: int = 100) -> List[Dict[str, Any]]:
        db = database.get_db()
        docs = await db.payment_transactions.find(
            {"status": {"$in": [s.value for s in PENDING_REVIEW_STATUSES]}},
            {"_id": 0},
        ).sort("created_at", 1).limit(limit).to_list(length=limit)
        queue = []
        for txn in docs:
            proof = await db.payment_proofs.find_one({"transaction_id": txn["transaction_id"]}, {"_id": 0})
            subscriber = await db.subscribers.find_one(
                {"subscriber_id": txn["subscriber_id"]},
                {"_id": 0, "subscriber_id": 1, "email": 1, "first_name": 1, "last_name": 1,
                 "subscription_status": 1, "plan_type": 1},
            )
            queue.append({**public_transaction(txn), "proof": proof, "subscriber": subscriber})
        return queue

    # ------------------------------------------------------------------
    # Manual proof
    # ------------------------------------------------------------------

    async def submit_proof(self, transaction_id: int, subscriber_id: int, proof: PaymentProofRequest) -> Dict[str, Any]:
        transaction = await self.get_transaction(transaction_id, subscriber_id)
        if transaction["payment_family"] != PaymentFamily.MANUAL.value:
            raise InvalidStateError(
                "Proof of payment applies only to manual payment methods",
                error_code="NOT_MANUAL_PAYMENT",
                transaction_id=transaction_id,
            )
        status = PaymentStatus(transaction["status"])
        flow_for(transaction).ensure(status, PaymentStatus.SUBMITTED, transaction_id)

        method = await self.get_method(transaction["payment_method"])
        if isinstance(method, ManualPaymentMethod) and method.requires_phone_number and not proof.phone_number:
            raise ValidationError("A phone number is required for this payment method", error_code="PHONE_REQUIRED")

        db = database.get_db()
        now = clock.utcnow()
        proof_doc = {
            "transaction_id": transaction_id,
            "subscriber_id": subscriber_id,
            "proof_description": proof.proof_description,
            "evidence_reference": proof.evidence_reference,
            "bank_reference": proof.bank_reference,
            "phone_number": proof.phone_number,
            "payment_date": proof.payment_date,
            "submitted_at": now,
            "decision": None,
            "reviewer_id": None,
            "reviewed_at": None,
            "rejection_reason": None,
        }
        async with database.transaction() as session:
            try:
                await db.payment_proofs.insert_one(proof_doc, session=session)
            except DuplicateKeyError:
                raise InvalidStateError("Proof already submitted for this payment", error_code="PROOF_ALREADY_SUBMITTED")
            updated = await db.payment_transactions.find_one_and_update(
                {
                    "transaction_id": transaction_id,
                    "status": PaymentStatus.AWAITING_PROOF.value,
                    "expires_at": {"$gte": now},
                },
                {
                    "$set": {"status": PaymentStatus.UNDER_REVIEW.value, "proof_submitted_at": now},
                    "$push": {"status_history": {"$each": [
                        _history(PaymentStatus.AWAITING_PROOF, PaymentStatus.SUBMITTED, "proof"),
                        _history(PaymentStatus.SUBMITTED, PaymentStatus.UNDER_REVIEW, "proof"),
                    ]}},
                },
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
                session=session,
            )
            if not updated:
                raise ConcurrencyConflictError(f"Payment {transaction_id} changed while submitting proof")

        await create_audit_log(
            action=AuditAction.PAYMENT_PROOF_SUBMITTED,
            actor_role=UserRole.ROLE_SUBSCRIBER,
            actor_id=str(subscriber_id),
            subscriber_id=subscriber_id,
            resource_type="payment_transaction",
            resource_id=str(transaction_id),
            metadata={"evidence_reference": proof.evidence_reference},
        )
        notification_service.notify(
            subscriber_id, EmailTemplateAlias.PROOF_RECEIVED, payment_reference=updated["payment_reference"]
        )
        logger.info(f"PAYMENT_PROOF_SUBMITTED transaction_id={transaction_id} subscriber_id={subscriber_id}")
        return public_transaction(updated)

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    async def _record_event(self, event: Optional[Dict[str, Any]], transaction_id: int, status: str, session) -> None:
        """Gateway event ledger row; its unique event_id makes replays fail the whole unit."""
        if not event:
            return
        db = database.get_db()
        await db.gateway_events.insert_one({
            "event_id": event["event_id"],
            "event_type": event.get("event_type"),
            "status": status,
            "transaction_id": transaction_id,
            "received_at": clock.utcnow(),
        }, session=session)

    async def complete(
        self,
        transaction_id: int,
        source: CompletionSource,
        external_event: Optional[Dict[str, Any]] = None,
        reviewer_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Mark paid and activate the subscription, all or nothing."""
        db = database.get_db()
        async with database.transaction() as session:
            await self._record_event(external_event, transaction_id, "PROCESSED", session)
            transaction = await self._load(transaction_id, session=session)
            current = PaymentStatus(transaction["status"])
            flow_for(transaction).ensure(current, PaymentStatus.COMPLETED, transaction_id)

            now = clock.utcnow()
            fields = {
                "status": PaymentStatus.COMPLETED.value,
                "processed_at": now,
                "completed_via": source.value,
            }
            if reviewer_id:
                fields["reviewed_by"] = reviewer_id
            updated = await db.payment_transactions.find_one_and_update(
                {"transaction_id": transaction_id, "status": current.value},
                {
                    "$set": fields,
                    "$push": {"status_history": _history(current, PaymentStatus.COMPLETED, source.value)},
                },
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
                session=session,
            )
            if not updated:
                raise ConcurrencyConflictError(f"Payment {transaction_id} changed during completion")

            if updated.get("campaign_id") is not None:
                await campaign_service.redeem(
                    campaign_id=updated["campaign_id"],
                    transaction_id=transaction_id,
                    subscriber_id=updated["subscriber_id"],
                    plan_type=updated["plan_type"],
                    discount_amount=to_money(updated["discount_amount"]),
                    session=session,
                )

            if source == CompletionSource.ADMIN_REVIEW:
                await db.payment_proofs.update_one(
                    {"transaction_id": transaction_id},
                    {"$set": {
                        "decision": ProofDecision.APPROVED.value,
                        "reviewer_id": reviewer_id,
                        "reviewed_at": now,
                    }},
                    session=session,
                )

            subscriber = await subscription_service.activate(
                updated["subscriber_id"], updated["plan_type"], transaction_id, session=session
            )

        await create_audit_log(
            action=AuditAction.PAYMENT_COMPLETED,
            actor_role=UserRole.ROLE_ADMIN if reviewer_id else UserRole.ROLE_SYSTEM,
            actor_id=reviewer_id,
            subscriber_id=updated["subscriber_id"],
            resource_type="payment_transaction",
            resource_id=str(transaction_id),
            before_state={"status": current.value},
            after_state={"status": PaymentStatus.COMPLETED.value},
            metadata={
                "source": source.value,
                "final_amount": updated["final_amount"],
                "campaign_id": updated.get("campaign_id"),
                "event_id": (external_event or {}).get("event_id"),
            },
        )
        if updated.get("campaign_id") is not None:
            await create_audit_log(
                action=AuditAction.COUPON_REDEEMED,
                actor_role=UserRole.ROLE_SYSTEM,
                subscriber_id=updated["subscriber_id"],
                resource_type="campaign",
                resource_id=str(updated["campaign_id"]),
                metadata={"transaction_id": transaction_id, "discount_amount": updated["discount_amount"]},
            )
        period_end = clock.ensure_utc(subscriber.get("current_period_end"))
        notification_service.notify(
            updated["subscriber_id"],
            EmailTemplateAlias.SUBSCRIPTION_ACTIVATED,
            payment_reference=updated["payment_reference"],
            plan_type=updated["plan_type"],
            current_period_end=period_end.date().isoformat() if period_end else "",
        )
        logger.info(
            f"PAYMENT_COMPLETED transaction_id={transaction_id} source={source.value} "
            f"subscriber_id={updated['subscriber_id']} plan_type={updated['plan_type']}"
        )
        return updated

    async def _close(
        self,
        transaction_id: int,
        target: PaymentStatus,
        source: str,
        fields: Dict[str, Any],
        external_event: Optional[Dict[str, Any]] = None,
        proof_update: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Move to a non-completed terminal state inside one transaction."""
        db = database.get_db()
        async with database.transaction() as session:
            await self._record_event(external_event, transaction_id, "PROCESSED", session)
            transaction = await self._load(transaction_id, session=session)
            current = PaymentStatus(transaction["status"])
            flow_for(transaction).ensure(current, target, transaction_id)

            updated = await db.payment_transactions.find_one_and_update(
                {"transaction_id": transaction_id, "status": current.value},
                {
                    "$set": {"status": target.value, **fields},
                    "$push": {"status_history": _history(current, target, source)},
                },
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
                session=session,
            )
            if not updated:
                raise ConcurrencyConflictError(f"Payment {transaction_id} changed concurrently")
            if proof_update:
                await db.payment_proofs.update_one(
                    {"transaction_id": transaction_id}, {"$set": proof_update}, session=session
                )
        return updated

    async def fail(self, transaction_id: int, reason: str, external_event: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Gateway reported the payment as failed."""
        updated = await self._close(
            transaction_id,
            PaymentStatus.FAILED,
            "gateway",
            {"failure_reason": reason, "processed_at": clock.utcnow()},
            external_event=external_event,
        )
        await create_audit_log(
            action=AuditAction.PAYMENT_FAILED,
            actor_role=UserRole.ROLE_SYSTEM,
            subscriber_id=updated["subscriber_id"],
            resource_type="payment_transaction",
            resource_id=str(transaction_id),
            reason_code=reason,
            metadata={"event_id": (external_event or {}).get("event_id")},
        )
        notification_service.notify(
            updated["subscriber_id"],
            EmailTemplateAlias.PAYMENT_FAILED,
            payment_reference=updated["payment_reference"],
            reason=reason,
        )
        logger.info(f"PAYMENT_FAILED transaction_id={transaction_id} reason={reason}")
        return updated

    async def expire(self, transaction_id: int, external_event: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Gateway reported the checkout session as expired."""
        updated = await self._close(
            transaction_id,
            PaymentStatus.EXPIRED,
            "gateway",
            {"expired_at": clock.utcnow()},
            external_event=external_event,
        )
        await create_audit_log(
            action=AuditAction.PAYMENT_EXPIRED,
            actor_role=UserRole.ROLE_SYSTEM,
            subscriber_id=updated["subscriber_id"],
            resource_type="payment_transaction",
            resource_id=str(transaction_id),
            metadata={"event_id": (external_event or {}).get("event_id")},
        )
        self._after_expired(updated)
        return updated

    async def reject(self, transaction_id: int, reviewer_id: str, reason: str) -> Dict[str, Any]:
        """Admin refused the proof. The subscription is left as it is."""
        now = clock.utcnow()
        updated = await self._close(
            transaction_id,
            PaymentStatus.REJECTED,
            "admin_review",
            {"failure_reason": reason, "processed_at": now, "reviewed_by": reviewer_id},
            proof_update={
                "decision": ProofDecision.REJECTED.value,
                "reviewer_id": reviewer_id,
                "reviewed_at": now,
                "rejection_reason": reason,
            },
        )
        await create_audit_log(
            action=AuditAction.PAYMENT_REJECTED,
            actor_role=UserRole.ROLE_ADMIN,
            actor_id=reviewer_id,
            subscriber_id=updated["subscriber_id"],
            resource_type="payment_transaction",
            resource_id=str(transaction_id),
            reason_code=reason,
        )
        notification_service.notify(
            updated["subscriber_id"],
            EmailTemplateAlias.PAYMENT_REJECTED,
            payment_reference=updated["payment_reference"],
            reason=reason,
        )
        logger.info(f"PAYMENT_REJECTED transaction_id={transaction_id} reviewer={reviewer_id}")
        return updated


def is_terminal(transaction: Dict[str, Any]) -> bool:
    return PaymentStatus(transaction["status"]) in TERMINAL_PAYMENT_STATUSES


payment_service = PaymentService()
