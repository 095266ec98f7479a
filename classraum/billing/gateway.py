"""
Billing gateway adapter backed by Stripe.

Stripe plays the role of a billing-key gateway here:

- A *billing key* is a Stripe PaymentMethod (``pm_xxx``) attached to the
  academy's Stripe Customer and set as its default.
- Keys are issued through Stripe Checkout in ``setup`` mode, a hosted page
  that collects the card without charging it.
- Charges are off-session PaymentIntents in KRW against the stored key. We
  schedule renewals ourselves (see charge_due_subscriptions) rather than
  using Stripe Billing subscriptions, because limits and amounts are decided
  locally.
- Charge outcomes arrive as ``payment_intent.*`` webhooks and are applied by
  webhooks.handle_gateway_event.

Every call is bounded by BILLING_GATEWAY_TIMEOUT_SECONDS and retried by the
SDK up to BILLING_GATEWAY_MAX_RETRIES times. Retries are safe because every
charge carries an idempotency key.

To test webhooks locally:
    stripe listen --forward-to localhost:8000/api/v1/billing/webhook/
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import stripe
from django.conf import settings

from classraum.billing.constants import ChargeKind
from classraum.billing.constants import GatewayOutcome
from classraum.billing.exceptions import GatewayError
from classraum.billing.exceptions import GatewayTimeoutError
from classraum.billing.exceptions import PaymentDeclinedError
from classraum.billing.exceptions import PaymentMethodRequiredError
from classraum.billing.pricing import cycle_charge_amount

if TYPE_CHECKING:
    from classraum.billing.models import Subscription

logger = logging.getLogger(__name__)

# Codes the hosted flow returns when the customer backs out.
USER_CANCEL_CODES = frozenset({"USER_CANCEL", "PAY_PROCESS_CANCELED", "canceled"})


class IssuanceOutcome:
    ISSUED = "issued"
    USER_CANCELLED = "user_cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class BillingKeyIssuance:
    """
    Result of a billing-key issuance flow.

    User cancellation is a normal outcome, not an error: nothing is shown to
    the customer and nothing changes.
    """

    outcome: str
    billing_key: str = ""
    code: str = ""
    message: str = ""

    @property
    def is_issued(self) -> bool:
        return self.outcome == IssuanceOutcome.ISSUED

    @property
    def is_user_cancelled(self) -> bool:
        return self.outcome == IssuanceOutcome.USER_CANCELLED


@dataclass(frozen=True)
class GatewayAck:
    """The gateway accepted a request."""

    reference: str
    status: str = ""


@dataclass(frozen=True)
class GatewayEventPayload:
    """A webhook event reduced to what the subscription state machine needs."""

    event_id: str
    event_type: str
    outcome: str
    amount: int | None
    subscription_id: int | None
    charge_kind: str
    reference: str = ""
    failure_message: str = ""


class StripeBillingGateway:
    """
    Stripe operations for billing keys, charges and webhooks.

    Usage:
        gateway = StripeBillingGateway()
        url = gateway.start_billing_key_issuance(
            subscription,
            success_url="https://app.classraum.com/billing/complete/",
            cancel_url="https://app.classraum.com/billing/",
        )
        ...
        issuance = gateway.issue_billing_key({"session_id": "cs_test_123"})
    """

    def __init__(self):
        """Initialize the Stripe SDK from settings."""
        stripe.api_key = settings.STRIPE_SECRET_KEY
        stripe.max_network_retries = settings.BILLING_GATEWAY_MAX_RETRIES
        stripe.default_http_client = stripe.RequestsClient(
            timeout=settings.BILLING_GATEWAY_TIMEOUT_SECONDS,
        )
        self.currency = settings.BILLING_CURRENCY

    # -------------------------------------------------------------------------
    # Customers and billing keys
    # -------------------------------------------------------------------------

    def get_or_create_customer(self, subscription: Subscription) -> str:
        """
        Get existing Stripe customer or create a new one.

        Returns the Stripe customer ID (cus_xxx).
        """
        if subscription.gateway_customer_id:
            return subscription.gateway_customer_id

        academy = subscription.academy
        try:
            customer = stripe.Customer.create(
                email=academy.billing_email or None,
                name=academy.name,
                metadata={
                    "academy_id": str(academy.pk),
                    "subscription_id": str(subscription.pk),
                },
            )
        except stripe.StripeError as exc:
            raise self._translate_error(exc) from exc

        subscription.gateway_customer_id = customer.id
        subscription.save(update_fields=["gateway_customer_id", "modified"])
        logger.info(
            "Created Stripe customer %s for academy %s",
            customer.id,
            academy.pk,
        )
        return customer.id

    def start_billing_key_issuance(
        self,
        subscription: Subscription,
        success_url: str,
        cancel_url: str,
    ) -> str:
        """
        Open a hosted Checkout page that collects a card without charging it.

        Stripe appends the session id to ``success_url`` when it contains the
        ``{CHECKOUT_SESSION_ID}`` placeholder. The client posts it back to
        billing-key/complete/.
        """
        customer_id = self.get_or_create_customer(subscription)
        try:
            session = stripe.checkout.Session.create(
                mode="setup",
                customer=customer_id,
                payment_method_types=["card"],
                success_url=success_url,
                cancel_url=cancel_url,
                client_reference_id=str(subscription.academy_id),
                metadata={"subscription_id": str(subscription.pk)},
            )
        except stripe.StripeError as exc:
            logger.exception(
                "Failed to open billing key session for subscription %s",
                subscription.pk,
            )
            raise self._translate_error(exc) from exc
        return session.url

    def issue_billing_key(self, response: dict | None) -> BillingKeyIssuance:
        """
        Interpret what the hosted flow returned.

        ``response`` is the payload the client received from the hosted page:
        either a ``billing_key`` directly, a Checkout ``session_id`` to look
        up, or an error ``code`` with an optional ``message``. An empty
        payload means the customer closed the page.
        """
        if not response:
            return BillingKeyIssuance(outcome=IssuanceOutcome.USER_CANCELLED)

        code = str(response.get("code") or "")
        message = str(response.get("message") or "")
        if code in USER_CANCEL_CODES:
            return BillingKeyIssuance(
                outcome=IssuanceOutcome.USER_CANCELLED,
                code=code,
                message=message,
            )
        if code:
            return BillingKeyIssuance(
                outcome=IssuanceOutcome.FAILED,
                code=code,
                message=message or "The payment gateway reported an error.",
            )

        billing_key = response.get("billing_key") or ""
        if billing_key:
            return BillingKeyIssuance(
                outcome=IssuanceOutcome.ISSUED,
                billing_key=billing_key,
            )

        session_id = response.get("session_id") or ""
        if not session_id:
            return BillingKeyIssuance(outcome=IssuanceOutcome.USER_CANCELLED)
        return self._billing_key_from_session(session_id)

    def _billing_key_from_session(self, session_id: str) -> BillingKeyIssuance:
        try:
            session = stripe.checkout.Session.retrieve(
                session_id,
                expand=["setup_intent"],
            )
        except stripe.StripeError as exc:
            logger.warning(
                "Could not retrieve checkout session %s: %s",
                session_id,
                exc,
            )
            return BillingKeyIssuance(
                outcome=IssuanceOutcome.FAILED,
                code=getattr(exc, "code", None) or "session_lookup_failed",
                message=str(exc),
            )

        if session.status != "complete":
            # Still open or expired: the customer never finished the page.
            return BillingKeyIssuance(
                outcome=IssuanceOutcome.USER_CANCELLED,
                code=f"session_{session.status}",
            )

        setup_intent = session.setup_intent
        payment_method = getattr(setup_intent, "payment_method", None)
        payment_method_id = getattr(payment_method, "id", payment_method)
        if not payment_method_id:
            return BillingKeyIssuance(
                outcome=IssuanceOutcome.FAILED,
                code="missing_payment_method",
                message="Checkout completed without a payment method.",
            )
        return BillingKeyIssuance(
            outcome=IssuanceOutcome.ISSUED,
            billing_key=payment_method_id,
        )

    def update_stored_instrument(
        self,
        subscription: Subscription,
        billing_key: str,
    ) -> GatewayAck:
        """
        Make ``billing_key`` the customer's default payment method.

        Does not charge anything.
        """
        customer_id = self.get_or_create_customer(subscription)
        try:
            stripe.PaymentMethod.attach(billing_key, customer=customer_id)
            stripe.Customer.modify(
                customer_id,
                invoice_settings={"default_payment_method": billing_key},
            )
        except stripe.StripeError as exc:
            logger.warning(
                "Failed to store payment method for subscription %s: %s",
                subscription.pk,
                exc,
            )
            raise self._translate_error(exc) from exc

        logger.info(
            "Stored payment method %s for customer %s",
            billing_key,
            customer_id,
        )
        return GatewayAck(reference=billing_key, status="attached")

    # -------------------------------------------------------------------------
    # Charges
    # -------------------------------------------------------------------------

    def charge(
        self,
        subscription: Subscription,
        amount: int,
        *,
        charge_kind: str,
        idempotency_key: str,
    ) -> GatewayAck:
        """
        Charge the stored billing key off-session.

        Raises:
            PaymentMethodRequiredError: no billing key on file.
            PaymentDeclinedError: the card was declined.
            GatewayTimeoutError: Stripe could not be reached in time.
            GatewayError: any other Stripe failure.
        """
        if not subscription.billing_key or not subscription.gateway_customer_id:
            raise PaymentMethodRequiredError

        try:
            intent = stripe.PaymentIntent.create(
                amount=amount,
                currency=self.currency,
                customer=subscription.gateway_customer_id,
                payment_method=subscription.billing_key,
                off_session=True,
                confirm=True,
                description=f"Classraum {subscription.tier} ({charge_kind})",
                metadata={
                    "subscription_id": str(subscription.pk),
                    "academy_id": str(subscription.academy_id),
                    "charge_kind": charge_kind,
                    "tier": subscription.tier,
                },
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            logger.warning(
                "Charge of %s %s for subscription %s failed: %s",
                amount,
                self.currency,
                subscription.pk,
                exc,
            )
            raise self._translate_error(exc) from exc

        logger.info(
            "Charged %s %s for subscription %s (%s, intent=%s)",
            amount,
            self.currency,
            subscription.pk,
            charge_kind,
            intent.id,
        )
        return GatewayAck(reference=intent.id, status=intent.status)

    def charge_recurring(self, subscription: Subscription) -> GatewayAck:
        """
        Charge one renewal of the subscription's cycle.

        The idempotency key is tied to the billing date, so a run that is
        repeated before the success webhook arrives does not charge twice.
        """
        amount = cycle_charge_amount(
            subscription.tier,
            subscription.billing_cycle,
            subscription.addons,
        )
        due = subscription.next_billing_date
        key = f"recurring:{subscription.pk}:{due.isoformat() if due else 'now'}"
        return self.charge(
            subscription,
            amount,
            charge_kind=ChargeKind.RECURRING,
            idempotency_key=key,
        )

    def _translate_error(self, exc: stripe.StripeError) -> GatewayError:
        if isinstance(exc, stripe.CardError):
            return PaymentDeclinedError(
                exc.user_message or "The card was declined.",
                decline_code=getattr(exc, "code", "") or "",
            )
        if isinstance(exc, stripe.APIConnectionError):
            return GatewayTimeoutError()
        return GatewayError(
            getattr(exc, "user_message", None) or "The payment gateway failed.",
        )

    # -------------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------------

    def construct_event(self, payload: bytes | str, signature: str) -> dict:
        """
        Verify a webhook's Stripe-Signature header and decode it.

        Raises:
            stripe.SignatureVerificationError: the signature does not match.
            ValueError: the body is not JSON.
        """
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        stripe.WebhookSignature.verify_header(
            payload,
            signature,
            settings.STRIPE_WEBHOOK_SECRET,
        )
        return json.loads(payload)

    def parse_event(self, event: dict) -> GatewayEventPayload | None:
        """
        Map a charge outcome event. Anything else returns None.
        """
        event_type = event.get("type", "")
        if event_type == "payment_intent.succeeded":
            outcome = GatewayOutcome.SUCCEEDED
        elif event_type == "payment_intent.payment_failed":
            outcome = GatewayOutcome.FAILED
        else:
            return None

        intent = (event.get("data") or {}).get("object") or {}
        metadata = intent.get("metadata") or {}
        subscription_id = metadata.get("subscription_id")
        last_error = intent.get("last_payment_error") or {}
        amount = intent.get("amount_received") or intent.get("amount")
        return GatewayEventPayload(
            event_id=event["id"],
            event_type=event_type,
            outcome=outcome,
            amount=int(amount) if amount is not None else None,
            subscription_id=int(subscription_id) if subscription_id else None,
            charge_kind=metadata.get("charge_kind") or ChargeKind.RECURRING,
            reference=intent.get("id", ""),
            failure_message=last_error.get("message", ""),
        )
