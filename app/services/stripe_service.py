from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
import asyncio
import json
import logging
import uuid

import stripe

from app.core.config import settings
from app.core.exceptions import PaymentError, WebhookVerificationError

logger = logging.getLogger(__name__)


@dataclass
class CheckoutResult:
    checkout_ref: str
    checkout_url: Optional[str]
    status: Optional[str] = None  # "open", "complete" or "expired"
    payment_ref: Optional[str] = None  # Payment intent, once the session is paid


@dataclass
class TransferResult:
    transfer_ref: str
    amount_cents: int


@dataclass
class PaidCheckout:
    """What a checkout.session.completed notification tells us"""
    booking_id: uuid.UUID
    checkout_ref: str
    payment_ref: Optional[str]
    amount_cents: int
    currency: str
    payment_status: str


class StripeService:
    """Escrow settlement against Stripe: checkout, transfer to the tutor, refund.

    Funds are captured on the platform account and only moved to the tutor's
    Connect account by an explicit transfer. Transfers and refunds carry an
    idempotency key derived from the booking, so a retried release or refund
    cannot move money twice.
    """

    def __init__(self):
        stripe.api_key = settings.STRIPE_SECRET_KEY
        stripe.max_network_retries = settings.STRIPE_MAX_NETWORK_RETRIES
        stripe.default_http_client = stripe.RequestsClient(timeout=settings.STRIPE_TIMEOUT_SECONDS)
        self.webhook_secret = settings.STRIPE_WEBHOOK_SECRET
        self.currency = settings.STRIPE_CURRENCY

    async def _call(self, operation: str, fn: Callable[..., Any], **kwargs) -> Any:
        """Run a blocking Stripe call off the event loop, mapping failures to PaymentError"""
        try:
            return await asyncio.to_thread(fn, **kwargs)
        except stripe.StripeError as e:
            logger.error(f"Stripe {operation} failed: {e}")
            raise PaymentError(f"Payment processor error during {operation}")

    async def create_checkout(
        self,
        booking_id: uuid.UUID,
        payer_email: str,
        amount_cents: int,
        seller_account: Optional[str],
        description: str,
        success_url: str,
        cancel_url: str
    ) -> CheckoutResult:
        """Create a Checkout session that collects the booking price into escrow"""
        metadata = {"booking_id": str(booking_id)}
        if seller_account:
            metadata["seller_account"] = seller_account

        session = await self._call(
            "checkout",
            stripe.checkout.Session.create,
            mode="payment",
            payment_method_types=["card"],
            customer_email=payer_email,
            line_items=[{
                "price_data": {
                    "currency": self.currency,
                    "product_data": {"name": description},
                    "unit_amount": amount_cents,
                },
                "quantity": 1,
            }],
            metadata=metadata,
            payment_intent_data={
                "transfer_group": str(booking_id),
                "metadata": metadata,
            },
            success_url=success_url,
            cancel_url=cancel_url
        )

        logger.info(f"Created checkout session {session.id} for booking {booking_id}")
        return CheckoutResult(checkout_ref=session.id, checkout_url=session.url, status=session.status)

    async def get_checkout(self, checkout_ref: str) -> CheckoutResult:
        session = await self._call("checkout lookup", stripe.checkout.Session.retrieve, id=checkout_ref)
        return self._checkout_result(session)

    async def expire_checkout(self, checkout_ref: str) -> CheckoutResult:
        """Close an open Checkout session so it can no longer take payment.

        Sessions that already completed or expired are returned as they are;
        a complete one carries the payment intent that paid it.
        """
        session = await self._call("checkout lookup", stripe.checkout.Session.retrieve, id=checkout_ref)
        if session.status == "open":
            session = await self._call("checkout expiry", stripe.checkout.Session.expire, session=checkout_ref)
            logger.info(f"Expired checkout session {checkout_ref}")
        return self._checkout_result(session)

    @staticmethod
    def _checkout_result(session) -> CheckoutResult:
        return CheckoutResult(
            checkout_ref=session.id,
            checkout_url=session.url,
            status=session.status,
            payment_ref=session.payment_intent
        )

    async def release_funds(
        self,
        booking_id: uuid.UUID,
        payment_ref: str,
        seller_account: str,
        gross_amount_cents: int,
        platform_fee_cents: int
    ) -> TransferResult:
        """Transfer the escrowed price minus the platform fee to the tutor"""
        net_amount_cents = gross_amount_cents - platform_fee_cents

        intent = await self._call("payment lookup", stripe.PaymentIntent.retrieve, id=payment_ref)
        transfer = await self._call(
            "transfer",
            stripe.Transfer.create,
            amount=net_amount_cents,
            currency=self.currency,
            destination=seller_account,
            source_transaction=intent.latest_charge,
            transfer_group=str(booking_id),
            metadata={"booking_id": str(booking_id)},
            idempotency_key=f"release-{booking_id}"
        )

        logger.info(f"Released {net_amount_cents} cents for booking {booking_id} as transfer {transfer.id}")
        return TransferResult(transfer_ref=transfer.id, amount_cents=net_amount_cents)

    async def refund(self, booking_id: uuid.UUID, payment_ref: str, reason: str) -> str:
        """Return the escrowed payment to the student"""
        refund = await self._call(
            "refund",
            stripe.Refund.create,
            payment_intent=payment_ref,
            reason="requested_by_customer",
            metadata={"booking_id": str(booking_id), "reason": reason[:500]},
            idempotency_key=f"refund-{booking_id}"
        )

        logger.info(f"Refunded payment {payment_ref} for booking {booking_id} as {refund.id}")
        return refund.id

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify a webhook delivery and return the event as a plain dict"""
        if not signature:
            raise WebhookVerificationError("Missing stripe-signature header")

        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"), signature, self.webhook_secret
            )
            event = json.loads(payload)
        except stripe.SignatureVerificationError:
            logger.warning("Webhook signature verification failed")
            raise WebhookVerificationError("Invalid signature")
        except (ValueError, UnicodeDecodeError):
            raise WebhookVerificationError("Invalid payload")

        if not isinstance(event, dict) or "type" not in event:
            raise WebhookVerificationError("Invalid payload")
        return event

    @staticmethod
    def parse_checkout_completed(event: Dict[str, Any]) -> Optional[PaidCheckout]:
        """Extract the paid booking from a checkout.session.completed event"""
        session = event.get("data", {}).get("object", {})
        booking_id = (session.get("metadata") or {}).get("booking_id")
        if not booking_id:
            logger.warning(f"Checkout session {session.get('id')} has no booking_id metadata")
            return None

        try:
            booking_uuid = uuid.UUID(booking_id)
        except ValueError:
            logger.warning(f"Checkout session {session.get('id')} has malformed booking_id {booking_id}")
            return None

        return PaidCheckout(
            booking_id=booking_uuid,
            checkout_ref=session.get("id"),
            payment_ref=session.get("payment_intent"),
            amount_cents=int(session.get("amount_total") or 0),
            currency=(session.get("currency") or "").lower(),
            payment_status=session.get("payment_status") or ""
        )


def get_stripe_service() -> StripeService:
    """FastAPI dependency"""
    return StripeService()
