"""
PayU Latam Payment Gateway Adapter

Every call goes to the single ``service.cgi`` endpoint with a ``command``
field and merchant credentials in the body. Confirmation webhooks arrive
form-encoded and carry an MD5 ``sign`` over the transaction fields.
"""

import json
import logging
import time
from typing import Any, Dict, Mapping, Optional
from urllib.parse import parse_qsl

from paygate.core.config import PayUSettings
from paygate.core.exceptions import GatewayRejection, MalformedPayload, ValidationError

from .base import (
    IntentResult,
    PaymentGateway,
    PaymentGatewayType,
    PaymentIntentRequest,
    RefundResult,
    StatusResult,
    WebhookEvent,
    dig,
    get_header,
)
from .money import Money
from .signatures import payu_signature, verify_payu_signature
from .status import CanonicalStatus, map_payu_pol_status, map_payu_status

logger = logging.getLogger(__name__)

SERVICE_PATH = "/payments-api/4.0/service.cgi"
CONFIRMATION_EVENT = "payment.updated"


class PayUAdapter(PaymentGateway):
    """PayU Latam payment gateway adapter."""

    gateway_type = PaymentGatewayType.PAYU
    display_name = "PayU"
    required_settings = ("api_key", "api_login", "merchant_id", "account_id")

    config: PayUSettings

    async def _command(self, command: str, transaction_id: Optional[str] = None, **body: Any) -> Dict[str, Any]:
        payload = {
            "language": self.config.language,
            "command": command,
            "merchant": {"apiKey": self.config.api_key, "apiLogin": self.config.api_login},
            "test": self.config.test_mode,
            **body,
        }
        result = await self._request(
            "POST",
            SERVICE_PATH,
            json=payload,
            headers={"Accept": "application/json"},
            transaction_id=transaction_id,
        )
        if result.get("code") != "SUCCESS":
            raise GatewayRejection(
                self.name,
                200,
                json.dumps(result, default=str),
                message=f"PayU {command} failed: {result.get('error') or 'Unknown error'}",
                transaction_id=transaction_id,
            )
        return result

    async def create_payment_intent(self, request: PaymentIntentRequest) -> IntentResult:
        self._ensure_currency(request.amount)

        reference = f"ORDER_{request.order_id}_{int(time.time())}"
        value = request.amount.format_major()
        customer = request.customer
        person = {
            "merchantBuyerId": request.payment_id,
            "fullName": customer.full_name,
            "emailAddress": customer.email,
            "contactPhone": customer.phone or "",
            "dniNumber": customer.document or "",
        }

        transaction: Dict[str, Any] = {
            "order": {
                "accountId": self.config.account_id,
                "referenceCode": reference,
                "description": request.description,
                "language": self.config.language,
                "signature": payu_signature(
                    self.config.api_key, self.config.merchant_id, reference, value, request.amount.currency
                ),
                "additionalValues": {
                    "TX_VALUE": {"value": value, "currency": request.amount.currency},
                },
                "buyer": person,
            },
            "payer": {**person, "merchantPayerId": request.payment_id},
            "extraParameters": {"INSTALLMENTS_NUMBER": 1},
            "type": "AUTHORIZATION_AND_CAPTURE",
            "paymentMethod": request.metadata.get("payment_method", "VISA"),
            "paymentCountry": self.config.country,
            "deviceSessionId": request.metadata.get("device_session_id", request.payment_id),
            "ipAddress": request.metadata.get("ip_address", "127.0.0.1"),
        }
        if request.webhook_url:
            transaction["order"]["notifyUrl"] = request.webhook_url
        if "credit_card_token_id" in request.metadata:
            transaction["creditCardTokenId"] = request.metadata["credit_card_token_id"]
        if request.return_url:
            transaction["extraParameters"]["RESPONSE_URL"] = request.return_url

        result = await self._command("SUBMIT_TRANSACTION", transaction_id=request.payment_id, transaction=transaction)
        response = result.get("transactionResponse") or {}
        transaction_id = self._require(response, "transactionId")
        raw_status = response.get("state")
        status = map_payu_status(raw_status)
        logger.info(f"PayU transaction {transaction_id} created for order {request.order_id} ({raw_status})")

        return IntentResult(
            gateway_payment_id=transaction_id,
            status=status,
            raw_status=raw_status,
            client_handle={
                "reference_code": reference,
                "order_id": response.get("orderId"),
                "payment_url": dig(response, "extraParameters", "BANK_URL"),
            },
            gateway_data=response,
            failure_reason=response.get("responseMessage") if status is CanonicalStatus.FAILED else None,
        )

    async def confirm_payment(
        self,
        gateway_payment_id: str,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> StatusResult:
        """Look the transaction up by order reference when one is given."""
        reference = (extra or {}).get("reference")
        if not reference:
            return await self.get_payment_status(gateway_payment_id)

        result = await self._command(
            "ORDER_DETAIL_BY_REFERENCE_CODE",
            transaction_id=gateway_payment_id,
            details={"referenceCode": reference},
        )
        orders = dig(result, "result", "payload") or []
        transactions = [tx for order in orders for tx in (order.get("transactions") or [])]
        transaction = next((tx for tx in transactions if tx.get("id") == gateway_payment_id), None)
        if transaction is None and transactions:
            transaction = transactions[0]
        if transaction is None:
            raise GatewayRejection(
                self.name, 200, json.dumps(result, default=str),
                message=f"PayU has no transaction for reference {reference}",
                transaction_id=gateway_payment_id,
            )
        return self._status_result(transaction.get("transactionResponse") or {}, transaction)

    async def get_payment_status(self, gateway_payment_id: str) -> StatusResult:
        result = await self._command(
            "TRANSACTION_RESPONSE_DETAIL",
            transaction_id=gateway_payment_id,
            details={"transactionId": gateway_payment_id},
        )
        detail = dig(result, "result", "payload") or {}
        return self._status_result(detail, detail)

    async def refund_payment(
        self,
        gateway_payment_id: str,
        amount: Optional[Money] = None,
        reason: Optional[str] = None,
        *,
        captured: Optional[Money] = None,
        gateway_data: Optional[Mapping[str, Any]] = None,
    ) -> RefundResult:
        refund_amount = self._resolve_refund_amount(gateway_payment_id, amount, captured)
        if refund_amount is None:
            raise ValidationError("PayU refunds need the captured amount", provider=self.name,
                                  transaction_id=gateway_payment_id)

        data = gateway_data or {}
        payu_order_id = data.get("orderId") or data.get("reference_pol")
        if not payu_order_id:
            raise ValidationError(
                f"PayU order id unknown for transaction {gateway_payment_id}",
                provider=self.name,
                transaction_id=gateway_payment_id,
            )

        transaction: Dict[str, Any] = {
            "order": {"id": payu_order_id},
            "type": "REFUND",
            "reason": reason or "Customer request",
            "parentTransactionId": gateway_payment_id,
        }
        if captured is not None and refund_amount < captured:
            transaction["type"] = "PARTIAL_REFUND"
            transaction["additionalValues"] = {
                "TX_VALUE": {"value": refund_amount.format_major(), "currency": refund_amount.currency},
            }

        result = await self._command("SUBMIT_TRANSACTION", transaction_id=gateway_payment_id, transaction=transaction)
        response = result.get("transactionResponse") or {}

        return RefundResult(
            refund_id=str(response.get("transactionId") or response.get("orderId") or payu_order_id),
            status=response.get("state") or "PENDING",
            amount=refund_amount,
            gateway_data=response,
        )

    def parse_webhook_payload(self, payload: bytes, headers: Mapping[str, str]) -> Dict[str, Any]:
        """Confirmations are form-encoded; JSON is accepted too."""
        content_type = (get_header(headers, "content-type") or "").lower()
        if "json" in content_type or payload.lstrip().startswith(b"{"):
            return self._decode_json(payload)

        try:
            pairs = parse_qsl(payload.decode("utf-8"), keep_blank_values=True, strict_parsing=True)
        except (UnicodeDecodeError, ValueError) as exc:
            raise MalformedPayload(self.name, f"Confirmation body is not form-encoded: {exc}") from exc
        if not pairs:
            raise MalformedPayload(self.name, "Confirmation body is empty")
        return dict(pairs)

    async def verify_webhook_signature(self, payload: bytes, headers: Mapping[str, str]) -> bool:
        try:
            fields = self.parse_webhook_payload(payload, headers)
        except MalformedPayload:
            return False

        return verify_payu_signature(
            _as_text(fields.get("sign") or fields.get("signature")),
            self.config.api_key,
            self.config.merchant_id,
            _as_text(fields.get("reference_sale")),
            _as_text(fields.get("value")),
            _as_text(fields.get("currency")),
            _as_text(fields.get("state_pol")),
        )

    async def process_webhook(
        self,
        parsed: Dict[str, Any],
        raw_payload: bytes,
        headers: Mapping[str, str],
    ) -> Optional[WebhookEvent]:
        transaction_id = _as_text(parsed.get("transaction_id"))
        state_pol = _as_text(parsed.get("state_pol"))
        if not transaction_id or not state_pol:
            raise MalformedPayload(self.name, "Confirmation lacks transaction_id or state_pol")

        status = map_payu_pol_status(state_pol)
        failure_reason = None
        if status is CanonicalStatus.FAILED:
            failure_reason = _as_text(parsed.get("response_message_pol")) or f"state_pol {state_pol}"

        return WebhookEvent(
            gateway_name=self.name,
            event_type=CONFIRMATION_EVENT,
            gateway_payment_id=transaction_id,
            raw_status=state_pol,
            status=status,
            failure_reason=failure_reason,
            raw_payload=raw_payload,
            headers=dict(headers),
            gateway_data=dict(parsed),
        )

    def describe(self) -> Dict[str, Any]:
        info = super().describe()
        info.update(merchant_id=self.config.merchant_id, test_mode=self.config.test_mode)
        return info

    def _status_result(self, response: Mapping[str, Any], gateway_data: Mapping[str, Any]) -> StatusResult:
        raw_status = response.get("state")
        status = map_payu_status(raw_status)
        return StatusResult(
            status=status,
            raw_status=raw_status,
            gateway_data=dict(gateway_data),
            failure_reason=response.get("responseMessage") if status is CanonicalStatus.FAILED else None,
        )


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)
