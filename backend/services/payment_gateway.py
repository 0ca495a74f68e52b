"""Payment gateway adapter - Stripe hosted Checkout.

The engine needs exactly two things from the gateway:
- begin a hosted checkout for a transaction (here)
- signed, at-least-once webhooks (see gateway_webhook_service)

Metadata carries transaction_id and subscriber_id for webhook tracing.
"""
import asyncio
import logging
import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict

import stripe

logger = logging.getLogger(__name__)

# Initialize Stripe (no placeholder default; missing key fails at checkout with clear error)
stripe.api_key = (os.getenv("STRIPE_SECRET_KEY") or "").strip()

FRONTEND_ORIGIN = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000").rstrip("/")


class GatewayError(Exception):
    """Gateway unavailable, misconfigured or refused the request."""


@dataclass(frozen=True)
class CheckoutSession:
    checkout_id: str
    redirect_url: str


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value())


class StripeGateway:

    async def begin_checkout(self, transaction: Dict[str, Any], plan_name: str, customer_email: str = None) -> CheckoutSession:
        if not stripe.api_key:
            raise GatewayError("STRIPE_SECRET_KEY is not configured")

        transaction_id = transaction["transaction_id"]
        session_params = {
            "mode": "payment",
            "line_items": [{
                "price_data": {
                    "currency": transaction["currency"].lower(),
                    "unit_amount": to_minor_units(Decimal(transaction["final_amount"])),
                    "product_data": {"name": f"{plan_name} - {transaction['payment_reference']}"},
                },
                "quantity": 1,
            }],
            "client_reference_id": str(transaction_id),
            "success_url": f"{FRONTEND_ORIGIN}/payments/{transaction_id}?status=success",
            "cancel_url": f"{FRONTEND_ORIGIN}/payments/{transaction_id}?status=cancelled",
            "metadata": {
                "transaction_id": str(transaction_id),
                "subscriber_id": str(transaction["subscriber_id"]),
                "payment_reference": transaction["payment_reference"],
            },
        }
        if customer_email:
            session_params["customer_email"] = customer_email

        try:
            session = await asyncio.to_thread(stripe.checkout.Session.create, **session_params)
        except stripe.StripeError as e:
            logger.error(f"Stripe checkout error for transaction {transaction_id}: {e}")
            raise GatewayError(str(e)) from e

        logger.info(f"Checkout session created for transaction {transaction_id}: {session.id}")
        return CheckoutSession(checkout_id=session.id, redirect_url=session.url)


payment_gateway = StripeGateway()
