"""Provider status tables and their fallback to pending."""

import pytest

from paygate.integrations.payment_gateways.status import (
    CanonicalStatus,
    map_mercadopago_status,
    map_paypal_capture_status,
    map_paypal_status,
    map_payu_pol_status,
    map_payu_status,
    map_stripe_status,
    map_wompi_status,
)


class TestStatusTables:
    @pytest.mark.parametrize(
        "mapper,raw,expected",
        [
            (map_stripe_status, "requires_payment_method", CanonicalStatus.PENDING),
            (map_stripe_status, "processing", CanonicalStatus.PROCESSING),
            (map_stripe_status, "succeeded", CanonicalStatus.COMPLETED),
            (map_stripe_status, "canceled", CanonicalStatus.CANCELLED),
            (map_paypal_status, "APPROVED", CanonicalStatus.PENDING),
            (map_paypal_status, "COMPLETED", CanonicalStatus.COMPLETED),
            (map_paypal_status, "VOIDED", CanonicalStatus.CANCELLED),
            (map_paypal_capture_status, "DECLINED", CanonicalStatus.FAILED),
            (map_paypal_capture_status, "REFUNDED", CanonicalStatus.REFUNDED),
            (map_payu_status, "APPROVED", CanonicalStatus.COMPLETED),
            (map_payu_status, "EXPIRED", CanonicalStatus.FAILED),
            (map_payu_pol_status, "4", CanonicalStatus.COMPLETED),
            (map_payu_pol_status, "6", CanonicalStatus.FAILED),
            (map_payu_pol_status, "7", CanonicalStatus.PENDING),
            (map_wompi_status, "APPROVED", CanonicalStatus.COMPLETED),
            (map_wompi_status, "VOIDED", CanonicalStatus.FAILED),
            (map_mercadopago_status, "in_process", CanonicalStatus.PENDING),
            (map_mercadopago_status, "approved", CanonicalStatus.COMPLETED),
            (map_mercadopago_status, "charged_back", CanonicalStatus.REFUNDED),
        ],
    )
    def test_documented_values(self, mapper, raw, expected):
        assert mapper(raw) is expected

    @pytest.mark.parametrize(
        "mapper",
        [map_stripe_status, map_paypal_status, map_payu_status, map_payu_pol_status,
         map_wompi_status, map_mercadopago_status],
    )
    def test_unknown_and_missing_values_map_to_pending(self, mapper):
        assert mapper("SOMETHING_NEW") is CanonicalStatus.PENDING
        assert mapper(None) is CanonicalStatus.PENDING

    def test_tables_are_case_sensitive(self):
        assert map_stripe_status("SUCCEEDED") is CanonicalStatus.PENDING
        assert map_wompi_status("approved") is CanonicalStatus.PENDING

    def test_terminal_statuses(self):
        assert CanonicalStatus.FAILED.is_terminal
        assert CanonicalStatus.REFUNDED.is_terminal
        assert not CanonicalStatus.COMPLETED.is_terminal
        assert not CanonicalStatus.PENDING.is_terminal
