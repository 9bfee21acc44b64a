from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

import stripe
from sqlalchemy.orm import Session

from boxoffice.config import Config
from boxoffice.models import GatewayProvider, Order, PaymentGateway, Promoter


class GatewayNotConfiguredError(Exception):
    """Raised when a promoter has no usable Stripe gateway."""


class PaymentService:
    """
    Wrapper around outbound Stripe calls.
    Every call is made with the owning promoter's own secret key.
    """

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    def get_gateway(self, promoter: Promoter | int | None) -> Optional[PaymentGateway]:
        promoter_id = promoter.promoterID if isinstance(promoter, Promoter) else promoter
        if promoter_id is None:
            return None
        return self.db.query(PaymentGateway).filter_by(promoterID=promoter_id).first()

    def get_secret_key(self, promoter: Promoter | int | None) -> str:
        gateway = self.get_gateway(promoter)
        if (
            gateway is None
            or not gateway.is_active
            or gateway.provider != GatewayProvider.STRIPE
            or not gateway.secret_key
        ):
            raise GatewayNotConfiguredError("Payment gateway not configured for this promoter")
        return gateway.secret_key

    def find_or_create_customer(
        self,
        api_key: str,
        email: str,
        name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> Tuple[bool, str, Optional[str]]:
        try:
            existing = stripe.Customer.list(email=email, limit=1, api_key=api_key)
            if existing.data:
                return True, "Customer found", existing.data[0].id
            created = stripe.Customer.create(email=email, name=name, phone=phone, api_key=api_key)
            return True, "Customer created", created.id
        except stripe.StripeError as exc:
            self.logger.warning("Stripe customer lookup failed", extra={"email": email, "error": str(exc)})
            return False, str(exc.user_message or exc), None

    def create_payment_intent(
        self,
        api_key: str,
        amount_cents: int,
        metadata: Dict[str, str],
        customer_id: Optional[str] = None,
        receipt_email: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> Tuple[bool, str, Optional[Any]]:
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency or Config.DEFAULT_CURRENCY,
                customer=customer_id,
                receipt_email=receipt_email,
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
                api_key=api_key,
            )
            return True, "Payment intent created", intent
        except stripe.StripeError as exc:
            self.logger.warning(
                "Stripe payment intent creation failed",
                extra={"amount_cents": amount_cents, "error": str(exc)},
            )
            return False, str(exc.user_message or exc), None

    def retrieve_payment_intent(self, api_key: str, payment_intent_id: str) -> Any:
        """Fetch an intent with its latest charge expanded. Stripe errors propagate."""
        return stripe.PaymentIntent.retrieve(
            payment_intent_id,
            expand=["latest_charge"],
            api_key=api_key,
        )

    def refund(self, order: Order, amount: float) -> Tuple[bool, str, Optional[str]]:
        """
        Refund part or all of an order's captured payment.
        Returns (success flag, message, external reference or None).
        """
        if order is None:
            return False, "Order is required for refunds", None
        if amount <= 0:
            return False, "Refund amount must be positive", None
        if not order.payment_intent_id:
            return False, "Order has no payment to refund", None

        try:
            api_key = self.get_secret_key(order.promoterID)
            refund = stripe.Refund.create(
                payment_intent=order.payment_intent_id,
                amount=int(round(amount * 100)),
                api_key=api_key,
            )
        except GatewayNotConfiguredError as exc:
            return False, str(exc), None
        except stripe.StripeError as exc:
            self.logger.warning(
                "Stripe refund failed",
                extra={"order_id": order.orderID, "amount": amount, "error": str(exc)},
            )
            return False, str(exc.user_message or exc), None

        self.logger.info(
            "Refund processed",
            extra={"order_id": order.orderID, "amount": amount, "reference": refund.id},
        )
        return True, "Refund processed successfully", refund.id
