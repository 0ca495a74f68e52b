"""Email delivery: dev-mode logging, Postmark failures recorded, never raised."""
from unittest.mock import MagicMock

from models import EmailTemplateAlias
from services.notification_service import notification_service


async def test_dev_mode_logs_message(fake_db, make_subscriber):
    sub = make_subscriber()
    log = await notification_service.deliver(
        sub["subscriber_id"], EmailTemplateAlias.PAYMENT_FAILED, {"payment_reference": "PAY-00000007", "reason": "declined"}
    )

    assert log.status == "sent"
    assert log.subject == "Payment PAY-00000007 failed"
    stored = await fake_db.message_logs.find_one({"message_id": log.message_id})
    assert stored["recipient"] == sub["email"]
    assert stored["template_alias"] == "payment-failed"
    assert await fake_db.audit_logs.count_documents({"action": "EMAIL_SENT"}) == 1


async def test_postmark_failure_is_recorded(fake_db, make_subscriber, monkeypatch):
    sub = make_subscriber()
    client = MagicMock()
    client.emails.send.side_effect = RuntimeError("Postmark rejected the sender")
    monkeypatch.setattr(notification_service, "client", client)

    log = await notification_service.deliver(sub["subscriber_id"], EmailTemplateAlias.TRIAL_EXPIRED, {})

    assert log.status == "failed"
    assert "Postmark rejected" in log.error_message
    client.emails.send.assert_called_once()
    assert client.emails.send.call_args.kwargs["To"] == sub["email"]
    assert await fake_db.audit_logs.count_documents({"action": "EMAIL_FAILED"}) == 1


async def test_unknown_subscriber_is_skipped(fake_db):
    assert await notification_service.deliver(404, EmailTemplateAlias.TRIAL_EXPIRED, {}) is None
    assert await fake_db.message_logs.count_documents({}) == 0
