# reservation_engine/infrastructure/gateway/razorpay_gateway.py

import logging

import razorpay
from razorpay.errors import SignatureVerificationError

from reservation_engine.domain.exceptions import (
    ConfigurationError,
    PaymentGatewayError,
    WebhookSignatureError,
)


logger = logging.getLogger(__name__)


class RazorpayGateway:
    """Order-create, refund and webhook-signature capabilities of the gateway."""

    def __init__(
        self,
        key_id: str | None,
        key_secret: str | None,
        webhook_secret: str | None = None,
    ):
        self._key_id = key_id
        self._key_secret = key_secret
        self._webhook_secret = webhook_secret
        self._client: razorpay.Client | None = None

    @property
    def key_id(self) -> str:
        if not self._key_id:
            raise ConfigurationError("Razorpay key id not configured.")
        return self._key_id

    @property
    def client(self) -> razorpay.Client:
        if self._client is None:
            if not self._key_id or not self._key_secret:
                raise ConfigurationError(
                    "Razorpay keys not configured. Set RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET."
                )
            self._client = razorpay.Client(auth=(self._key_id, self._key_secret))
        return self._client

    def create_order(
        self,
        amount_paise: int,
        currency: str,
        receipt: str,
        notes: dict,
    ) -> dict:
        try:
            order = self.client.order.create(
                {
                    "amount": amount_paise,
                    "currency": currency,
                    "receipt": receipt,
                    "notes": notes,
                }
            )
        except ConfigurationError:
            raise
        except Exception as exc:
            logger.exception("Razorpay order creation failed. receipt=%s", receipt)
            raise PaymentGatewayError(f"Order creation failed: {exc}") from exc
        return order

    def refund(
        self,
        payment_id: str,
        amount_paise: int | None,
        notes: dict,
    ) -> dict:
        data: dict = {"notes": notes}
        if amount_paise is not None:
            data["amount"] = amount_paise
        try:
            return self.client.payment.refund(payment_id, data)
        except ConfigurationError:
            raise
        except Exception as exc:
            logger.exception("Razorpay refund failed. payment_id=%s", payment_id)
            raise PaymentGatewayError(f"Refund failed: {exc}") from exc

    def verify_webhook_signature(self, body: bytes, signature: str | None) -> None:
        if not self._webhook_secret:
            raise ConfigurationError("Webhook secret not configured.")
        if not signature:
            raise WebhookSignatureError("Missing signature")

        # Signature verification is local; API credentials are not used.
        verifier = razorpay.Client(auth=(self._key_id or "", self._key_secret or ""))
        try:
            verifier.utility.verify_webhook_signature(
                body.decode("utf-8"),
                signature,
                self._webhook_secret,
            )
        except (SignatureVerificationError, UnicodeDecodeError) as exc:
            raise WebhookSignatureError("Invalid signature") from exc
