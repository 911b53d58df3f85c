"""Structured log processors."""

from paygate.core.logging import REDACTED, redact_secrets


class TestRedactSecrets:
    def test_masks_credentials(self):
        event = {"event": "gateway.configured", "provider": "stripe", "secret_key": "sk_live_1", "api_key": "k"}

        result = redact_secrets(None, "info", event)

        assert result["secret_key"] == REDACTED
        assert result["api_key"] == REDACTED
        assert result["provider"] == "stripe"

    def test_leaves_other_fields_alone(self):
        event = {"event": "payment.intent.created", "payment_id": "p-1", "amount_minor": 9999}

        assert redact_secrets(None, "info", dict(event)) == event
