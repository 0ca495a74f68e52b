"""Admin Reconciliation Workflow - human verification of manual payments.

Rules:
- Only a payment in `under_review` can be decided.
- Approve runs the full completion (status, coupon redemption, subscription
  activation) as one atomic unit.
- Reject records reviewer + reason and NEVER touches the subscription.
- While a decision is pending, entitlements ignore the payment and the trial
  does not lapse.
"""
import logging
from typing import Any, Dict, List, Optional

from models import CompletionSource, PaymentStatus, ReviewDecision
from services.billing_errors import InvalidStateError, ValidationError
from services.payment_service import payment_service, public_transaction

logger = logging.getLogger(__name__)


class ReconciliationService:

    async def list_pending(self, limit: int = 100) -> List[Dict[str, Any]]:
        return await payment_service.list_pending_review(limit=limit)

    async def review(
        self,
        transaction_id: int,
        decision: ReviewDecision,
        reviewer_id: str,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        transaction = await payment_service.get_transaction(transaction_id)
        status = PaymentStatus(transaction["status"])
        if status != PaymentStatus.UNDER_REVIEW:
            raise InvalidStateError(
                f"Payment {transaction_id} is {status.value}; only payments under review can be decided",
                error_code="NOT_UNDER_REVIEW",
                transaction_id=transaction_id,
                status=status.value,
            )

        if decision == ReviewDecision.APPROVE:
            updated = await payment_service.complete(
                transaction_id, CompletionSource.ADMIN_REVIEW, reviewer_id=reviewer_id
            )
        else:
            if not (reason or "").strip():
                raise ValidationError("A rejection reason is required", error_code="REASON_REQUIRED")
            updated = await payment_service.reject(transaction_id, reviewer_id, reason.strip())

        logger.info(
            f"PAYMENT_REVIEWED transaction_id={transaction_id} decision={decision.value} reviewer={reviewer_id}"
        )
        return public_transaction(updated)


reconciliation_service = ReconciliationService()
