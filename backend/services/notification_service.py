"""Subscriber notifications over Postmark.

Delivery is fire-and-forget: lifecycle and payment transitions call
`notify(...)` after their state change is committed and never wait on (or
fail because of) the email. Without POSTMARK_SERVER_TOKEN messages are
logged and recorded but not sent.
"""
import asyncio
import logging
import os
from typing import Any, Dict, Optional, Set

from postmarker.core import PostmarkClient

from database import database
from models import MessageLog, EmailTemplateAlias, AuditAction
from utils.audit import create_audit_log
from utils import clock

logger = logging.getLogger(__name__)

SUBJECTS = {
    EmailTemplateAlias.WELCOME_TRIAL: "Welcome! Your {trial_days}-day trial has started",
    EmailTemplateAlias.TRIAL_ENDING: "Your trial ends in {days_left} day(s)",
    EmailTemplateAlias.TRIAL_EXPIRED: "Your trial has ended",
    EmailTemplateAlias.SUBSCRIPTION_ACTIVATED: "Subscription activated - {plan_type}",
    EmailTemplateAlias.PAYMENT_FAILED: "Payment {payment_reference} failed",
    EmailTemplateAlias.PAYMENT_REJECTED: "Payment {payment_reference} could not be verified",
    EmailTemplateAlias.PAYMENT_EXPIRED: "Payment {payment_reference} expired",
    EmailTemplateAlias.PROOF_RECEIVED: "We received your proof for {payment_reference}",
    EmailTemplateAlias.SUBSCRIPTION_PAST_DUE: "Action needed: your subscription is past due",
    EmailTemplateAlias.SUBSCRIPTION_CANCELED: "Your subscription was canceled",
}

BODIES = {
    EmailTemplateAlias.WELCOME_TRIAL: (
        "Hi {first_name},\n\nYour trial of the {plan_type} plan is active until {trial_ends_at}."
    ),
    EmailTemplateAlias.TRIAL_ENDING: (
        "Hi {first_name},\n\nYour trial ends in {days_left} day(s). Choose a plan to keep your data available."
    ),
    EmailTemplateAlias.TRIAL_EXPIRED: (
        "Hi {first_name},\n\nYour trial has ended. Subscribe to a plan to continue creating records."
    ),
    EmailTemplateAlias.SUBSCRIPTION_ACTIVATED: (
        "Hi {first_name},\n\nPayment {payment_reference} was confirmed. "
        "Your {plan_type} subscription is active until {current_period_end}."
    ),
    EmailTemplateAlias.PAYMENT_FAILED: (
        "Hi {first_name},\n\nPayment {payment_reference} did not go through ({reason}). "
        "Please try again with the same or another payment method."
    ),
    EmailTemplateAlias.PAYMENT_REJECTED: (
        "Hi {first_name},\n\nWe could not verify the proof for payment {payment_reference}: {reason}. "
        "Please contact support."
    ),
    EmailTemplateAlias.PAYMENT_EXPIRED: (
        "Hi {first_name},\n\nPayment {payment_reference} expired before it was completed. "
        "Start a new payment to subscribe."
    ),
    EmailTemplateAlias.PROOF_RECEIVED: (
        "Hi {first_name},\n\nYour proof for payment {payment_reference} is under review. "
        "We will email you once it is verified."
    ),
    EmailTemplateAlias.SUBSCRIPTION_PAST_DUE: (
        "Hi {first_name},\n\nWe could not collect your latest payment ({reason}). "
        "Access is limited until the balance is settled."
    ),
    EmailTemplateAlias.SUBSCRIPTION_CANCELED: (
        "Hi {first_name},\n\nYour subscription was canceled ({reason})."
    ),
}


class _SafeDict(dict):
    def __missing__(self, key):
        return ""


class NotificationService:
    def __init__(self):
        postmark_token = os.getenv("POSTMARK_SERVER_TOKEN")
        self.sender = os.getenv("EMAIL_SENDER", "billing@financetracker.ao")
        if not postmark_token:
            logger.warning("POSTMARK_SERVER_TOKEN not set - emails will be logged but not sent")
            self.client = None
        else:
            self.client = PostmarkClient(server_token=postmark_token)
        self._tasks: Set[asyncio.Task] = set()

    def notify(self, subscriber_id: int, template_alias: EmailTemplateAlias, **context: Any) -> None:
        """Schedule a notification; returns immediately."""
        task = asyncio.create_task(self.deliver(subscriber_id, template_alias, context))
        self._tasks.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Notification task failed: {task.exception()}")

    async def deliver(self, subscriber_id: int, template_alias: EmailTemplateAlias, context: Dict[str, Any]) -> Optional[MessageLog]:
        db = database.get_db()
        subscriber = await db.subscribers.find_one(
            {"subscriber_id": subscriber_id},
            {"_id": 0, "email": 1, "first_name": 1},
        )
        if not subscriber or not subscriber.get("email"):
            logger.warning(f"No email on file for subscriber {subscriber_id}; skipping {template_alias.value}")
            return None

        model = _SafeDict(context)
        model.setdefault("first_name", subscriber.get("first_name") or "")
        subject = SUBJECTS[template_alias].format_map(model)
        body = BODIES[template_alias].format_map(model)
        return await self.send_email(subscriber["email"], template_alias, subject, body, subscriber_id)

    async def send_email(
        self,
        recipient: str,
        template_alias: EmailTemplateAlias,
        subject: str,
        text_body: str,
        subscriber_id: Optional[int] = None,
    ) -> MessageLog:
        db = database.get_db()
        message_log = MessageLog(
            subscriber_id=subscriber_id,
            recipient=recipient,
            template_alias=template_alias,
            subject=subject,
        )

        try:
            if self.client:
                response = await asyncio.to_thread(
                    self.client.emails.send,
                    From=self.sender,
                    To=recipient,
                    Subject=subject,
                    TextBody=text_body,
                    Tag=template_alias.value,
                )
                message_log.postmark_message_id = response["MessageID"]
                logger.info(f"Email sent to {recipient}: {response['MessageID']}")
            else:
                # Dev mode - just log
                logger.info(f"[DEV MODE] Email logged (not sent) to {recipient}: {subject}")
            message_log.status = "sent"
            message_log.sent_at = clock.utcnow()
        except Exception as e:
            message_log.status = "failed"
            message_log.error_message = str(e)
            logger.error(f"Failed to send email to {recipient}: {e}")

        await db.message_logs.insert_one(message_log.model_dump(mode="json"))

        await create_audit_log(
            action=AuditAction.EMAIL_SENT if message_log.status == "sent" else AuditAction.EMAIL_FAILED,
            subscriber_id=subscriber_id,
            metadata={
                "template": template_alias.value,
                "status": message_log.status,
                "postmark_id": message_log.postmark_message_id,
                "error": message_log.error_message,
            },
        )
        return message_log


notification_service = NotificationService()
