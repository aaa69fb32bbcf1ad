from app.shared.core.logging import pii_redactor


def test_emails_and_secrets_are_redacted():
    event = {
        "event": "webhook_failed",
        "customer_email": "owner@acme.test",
        "stripe-signature": "t=1,v1=abc",
        "payload": {
            "data": [{"email": "billing@acme.test", "amount": 100}],
            "api_key": "sk_live_123",
            "paystack_secret_key": "sk_x",
        },
        "note": "contact ops@acme.test for help",
    }

    redacted = pii_redactor(None, "info", event)

    assert redacted["customer_email"] == "[EMAIL_REDACTED]"
    assert redacted["stripe-signature"] == "[REDACTED]"
    assert redacted["payload"]["api_key"] == "[REDACTED]"
    assert redacted["payload"]["paystack_secret_key"] == "[REDACTED]"
    assert redacted["payload"]["data"] == [{"email": "[EMAIL_REDACTED]", "amount": 100}]
    assert redacted["note"] == "contact [EMAIL_REDACTED] for help"
    assert redacted["event"] == "webhook_failed"
