"""
Subscription API endpoints.

Every endpoint acts on the academy the caller manages. Billing exceptions
are rendered as ``{"detail": ..., "code": ...}`` with a status that tells the
dashboard what to do next:

- 400: the request was invalid for the current state (nothing changed)
- 402: a payment method is needed, or the card was declined
- 502/504: the payment gateway failed or timed out (nothing changed)
"""

from __future__ import annotations

import logging
from http import HTTPStatus

import stripe
from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from drf_spectacular.utils import OpenApiResponse
from drf_spectacular.utils import extend_schema
from drf_spectacular.utils import inline_serializer
from rest_framework import generics
from rest_framework import permissions
from rest_framework import serializers
from rest_framework.exceptions import APIException
from rest_framework.exceptions import PermissionDenied
from rest_framework.response import Response
from rest_framework.views import APIView

from classraum.billing import catalog
from classraum.billing.constants import SubscriptionStatus
from classraum.billing.exceptions import AddOnValidationError
from classraum.billing.exceptions import BillingError
from classraum.billing.exceptions import GatewayTimeoutError
from classraum.billing.exceptions import InvalidPlanChangeError
from classraum.billing.exceptions import PaymentDeclinedError
from classraum.billing.exceptions import PaymentMethodRequiredError
from classraum.billing.exceptions import SubscriptionNotFoundError
from classraum.billing.exceptions import SubscriptionStateError
from classraum.billing.gateway import IssuanceOutcome
from classraum.billing.models import GatewayEvent
from classraum.billing.models import Subscription
from classraum.billing.pagination import ChargeHistoryPagination
from classraum.billing.serializers import AddOnChangeSerializer
from classraum.billing.serializers import BillingKeyCompleteSerializer
from classraum.billing.serializers import BillingKeyStartSerializer
from classraum.billing.serializers import CHARGE_STATUS_BY_OUTCOME
from classraum.billing.serializers import CancelSerializer
from classraum.billing.serializers import ChargeSerializer
from classraum.billing.serializers import ChangePlanSerializer
from classraum.billing.serializers import SubscribeSerializer
from classraum.billing.serializers import SubscriptionSerializer
from classraum.billing.serializers import UpdatePaymentMethodSerializer
from classraum.billing.serializers import status_document
from classraum.billing.subscriptions import SubscriptionService
from classraum.billing.webhooks import handle_gateway_event

logger = logging.getLogger(__name__)


def billing_error_status(exc: BillingError) -> HTTPStatus:
    """HTTP status for a billing exception."""
    if isinstance(exc, (PaymentMethodRequiredError, PaymentDeclinedError)):
        return HTTPStatus.PAYMENT_REQUIRED
    if isinstance(exc, GatewayTimeoutError):
        return HTTPStatus.GATEWAY_TIMEOUT
    if isinstance(exc, SubscriptionNotFoundError):
        return HTTPStatus.NOT_FOUND
    if isinstance(
        exc,
        (AddOnValidationError, InvalidPlanChangeError, SubscriptionStateError),
    ):
        return HTTPStatus.BAD_REQUEST
    return HTTPStatus.BAD_GATEWAY


ERROR_RESPONSE = inline_serializer(
    name="BillingErrorResponse",
    fields={
        "detail": serializers.CharField(),
        "code": serializers.CharField(),
    },
)

QUOTE_RESPONSE = inline_serializer(
    name="AddOnQuoteResponse",
    fields={
        "newMonthlyAmount": serializers.IntegerField(),
        "previousMonthlyAmount": serializers.IntegerField(),
        "addonCost": serializers.IntegerField(),
        "newLimits": serializers.DictField(),
        "addons": serializers.DictField(),
    },
)


class IsAcademyManager(permissions.BasePermission):
    """The caller manages an academy."""

    message = "You must manage an academy to use billing."

    def has_permission(self, request, view) -> bool:
        user = request.user
        return bool(
            user
            and user.is_authenticated
            and getattr(user, "academy_manager", None) is not None,
        )


class AcademyBillingView(APIView):
    """
    Base view: resolves the caller's academy and renders billing errors.
    """

    permission_classes = [permissions.IsAuthenticated, IsAcademyManager]
    service_class = SubscriptionService

    def get_academy(self):
        manager = getattr(self.request.user, "academy_manager", None)
        if manager is None:
            raise PermissionDenied(IsAcademyManager.message)
        return manager.academy

    def get_service(self) -> SubscriptionService:
        return self.service_class()

    def handle_exception(self, exc):
        if isinstance(exc, BillingError):
            status_code = billing_error_status(exc)
            if status_code >= HTTPStatus.INTERNAL_SERVER_ERROR:
                logger.warning("Gateway error for %s: %s", self.request.path, exc)
            return Response(
                {"detail": exc.detail, "code": exc.code},
                status=status_code,
            )
        if not isinstance(exc, APIException):
            logger.exception("Unexpected billing API error on %s", self.request.path)
        return super().handle_exception(exc)


class SubscriptionStatusView(AcademyBillingView):
    @extend_schema(
        summary="Get subscription status",
        description=(
            "Returns the subscription, current usage, whether usage fits the "
            "limits, and days left in the billing period."
        ),
        responses={200: OpenApiResponse(description="Status document")},
        tags=["Subscription"],
    )
    def get(self, request):
        report = self.get_service().get_status(self.get_academy())
        return Response(status_document(report), status=HTTPStatus.OK)


class AddOnsView(AcademyBillingView):
    @extend_schema(
        summary="Get add-ons",
        responses={200: OpenApiResponse(description="Current and pending add-ons")},
        tags=["Subscription"],
    )
    def get(self, request):
        return Response(
            self.get_service().get_addons(self.get_academy()),
            status=HTTPStatus.OK,
        )

    @extend_schema(
        summary="Change add-ons",
        description=(
            "Apply add-on deltas immediately. Negative values remove capacity, "
            "but never below current usage or the plan's base allowance."
        ),
        request=AddOnChangeSerializer,
        responses={200: QUOTE_RESPONSE, 400: ERROR_RESPONSE},
        tags=["Subscription"],
    )
    def post(self, request):
        serializer = AddOnChangeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        quote = self.get_service().apply_addons(
            self.get_academy(),
            **serializer.validated_data,
        )
        return Response(quote.as_dict(), status=HTTPStatus.OK)

    @extend_schema(
        summary="Remove all add-ons",
        responses={200: QUOTE_RESPONSE, 400: ERROR_RESPONSE},
        tags=["Subscription"],
    )
    def delete(self, request):
        quote = self.get_service().cancel_addons(self.get_academy())
        return Response(quote.as_dict(), status=HTTPStatus.OK)


class AddOnsPreviewView(AcademyBillingView):
    @extend_schema(
        summary="Preview an add-on change",
        description="Same as POST add-ons/ but nothing is saved.",
        request=AddOnChangeSerializer,
        responses={200: QUOTE_RESPONSE, 400: ERROR_RESPONSE},
        tags=["Subscription"],
    )
    def post(self, request):
        serializer = AddOnChangeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        quote = self.get_service().preview_addons(
            self.get_academy(),
            **serializer.validated_data,
        )
        return Response(quote.as_dict(), status=HTTPStatus.OK)


class ChangePlanView(AcademyBillingView):
    @extend_schema(
        summary="Change plan tier",
        description=(
            "Upgrades take effect immediately with a prorated charge. "
            "Downgrades are scheduled for the end of the billing period."
        ),
        request=ChangePlanSerializer,
        responses={
            200: OpenApiResponse(description="Plan change result"),
            400: ERROR_RESPONSE,
            402: ERROR_RESPONSE,
        },
        tags=["Subscription"],
    )
    def post(self, request):
        serializer = ChangePlanSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = self.get_service().change_tier(
            self.get_academy(),
            serializer.validated_data["tier"],
        )
        return Response(result.as_dict(), status=HTTPStatus.OK)


class CancelPlanChangeView(AcademyBillingView):
    @extend_schema(
        summary="Cancel a scheduled plan change",
        request=None,
        responses={200: OpenApiResponse(description="{canceled: bool}")},
        tags=["Subscription"],
    )
    def post(self, request):
        canceled = self.get_service().cancel_scheduled_change(self.get_academy())
        return Response({"canceled": canceled}, status=HTTPStatus.OK)


class CancelSubscriptionView(AcademyBillingView):
    @extend_schema(
        summary="Cancel subscription",
        description=(
            "Turns off auto-renew. The plan stays active until the end of the "
            "current billing period."
        ),
        request=CancelSerializer,
        responses={200: SubscriptionSerializer},
        tags=["Subscription"],
    )
    def post(self, request):
        serializer = CancelSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        subscription = self.get_service().cancel(
            self.get_academy(),
            serializer.validated_data["reason"],
        )
        return Response(SubscriptionSerializer(subscription).data, status=HTTPStatus.OK)


class UpdatePaymentMethodView(AcademyBillingView):
    @extend_schema(
        summary="Update payment method",
        request=UpdatePaymentMethodSerializer,
        responses={200: SubscriptionSerializer, 502: ERROR_RESPONSE},
        tags=["Subscription"],
    )
    def post(self, request):
        serializer = UpdatePaymentMethodSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        subscription = self.get_service().update_payment_method(
            self.get_academy(),
            serializer.validated_data["billing_key"],
        )
        return Response(SubscriptionSerializer(subscription).data, status=HTTPStatus.OK)


class BillingKeyStartView(AcademyBillingView):
    @extend_schema(
        summary="Start payment method registration",
        description="Returns the hosted page URL where the card is entered.",
        request=BillingKeyStartSerializer,
        responses={
            200: inline_serializer(
                name="BillingKeyStartResponse",
                fields={"url": serializers.URLField()},
            ),
        },
        tags=["Subscription"],
    )
    def post(self, request):
        serializer = BillingKeyStartSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        url = self.get_service().start_billing_key_issuance(
            self.get_academy(),
            serializer.validated_data["success_url"],
            serializer.validated_data["cancel_url"],
        )
        return Response({"url": url}, status=HTTPStatus.OK)


class BillingKeyCompleteView(AcademyBillingView):
    @extend_schema(
        summary="Finish payment method registration",
        description=(
            "Post what the hosted page returned. If the manager closed the "
            "page the response is 200 with status 'cancelled' and nothing "
            "changes."
        ),
        request=BillingKeyCompleteSerializer,
        responses={200: SubscriptionSerializer, 402: ERROR_RESPONSE},
        tags=["Subscription"],
    )
    def post(self, request):
        serializer = BillingKeyCompleteSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        academy = self.get_academy()
        service = self.get_service()
        issuance = service.complete_billing_key_issuance(
            academy,
            dict(serializer.validated_data),
        )
        if issuance.outcome == IssuanceOutcome.USER_CANCELLED:
            return Response({"status": "cancelled"}, status=HTTPStatus.OK)
        if issuance.outcome == IssuanceOutcome.FAILED:
            return Response(
                {"detail": issuance.message, "code": issuance.code},
                status=HTTPStatus.PAYMENT_REQUIRED,
            )
        report = service.get_status(academy)
        return Response(
            {
                "status": "issued",
                "subscription": SubscriptionSerializer(report.subscription).data,
            },
            status=HTTPStatus.OK,
        )


class PlansView(AcademyBillingView):
    @extend_schema(
        summary="List plans",
        description=(
            "The plan catalog with add-on pricing. The academy's current tier "
            "is flagged with isCurrentPlan."
        ),
        responses={200: OpenApiResponse(description="Plans")},
        tags=["Subscription"],
    )
    def get(self, request):
        current = (
            Subscription.objects.filter(academy=self.get_academy())
            .exclude(status=SubscriptionStatus.CANCELED)
            .values_list("tier", flat=True)
            .first()
        )
        plans = [
            {**plan, "isCurrentPlan": plan["tier"] == current}
            for plan in catalog.catalog_as_list()
        ]
        return Response({"plans": plans}, status=HTTPStatus.OK)


class SubscribeView(AcademyBillingView):
    @extend_schema(
        summary="Start a subscription",
        description=(
            "Creates the academy's subscription, or restarts a canceled one. "
            "A paid tier without a trial is charged for the first period and "
            "needs a registered payment method."
        ),
        request=SubscribeSerializer,
        responses={
            201: SubscriptionSerializer,
            400: ERROR_RESPONSE,
            402: ERROR_RESPONSE,
        },
        tags=["Subscription"],
    )
    def post(self, request):
        serializer = SubscribeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        subscription = self.get_service().start_subscription(
            self.get_academy(),
            **serializer.validated_data,
        )
        return Response(
            SubscriptionSerializer(subscription).data,
            status=HTTPStatus.CREATED,
        )


class ChargeHistoryView(AcademyBillingView, generics.ListAPIView):
    """
    Charges the gateway reported for the academy, newest first.

    ``?status=paid`` or ``?status=failed`` narrows the list.
    """

    serializer_class = ChargeSerializer
    pagination_class = ChargeHistoryPagination

    def get_queryset(self):
        queryset = GatewayEvent.objects.filter(
            subscription__academy=self.get_academy(),
            outcome__in=list(CHARGE_STATUS_BY_OUTCOME),
        )
        status = self.request.query_params.get("status")
        outcomes = [
            outcome
            for outcome, label in CHARGE_STATUS_BY_OUTCOME.items()
            if label == status
        ]
        if outcomes:
            queryset = queryset.filter(outcome__in=outcomes)
        return queryset

    @extend_schema(summary="List charges", tags=["Subscription"])
    def get(self, request, *args, **kwargs):
        return super().get(request, *args, **kwargs)


@method_decorator(csrf_exempt, name="dispatch")
class GatewayWebhookView(APIView):
    """
    Receive Stripe webhooks.

    Authenticated by the Stripe-Signature header, not by session or token.
    """

    authentication_classes: list = []
    permission_classes = [permissions.AllowAny]
    throttle_classes: list = []

    @extend_schema(exclude=True)
    def post(self, request):
        service = SubscriptionService()
        signature = request.headers.get("Stripe-Signature", "")
        try:
            event = service.gateway.construct_event(request.body, signature)
        except stripe.SignatureVerificationError:
            logger.warning("Rejected webhook with invalid signature")
            return Response(
                {"detail": "Invalid signature.", "code": "invalid_signature"},
                status=HTTPStatus.BAD_REQUEST,
            )
        except ValueError:
            return Response(
                {"detail": "Invalid payload.", "code": "invalid_payload"},
                status=HTTPStatus.BAD_REQUEST,
            )

        result = handle_gateway_event(event, service=service)
        return Response(
            {"status": result.status, "eventId": result.event_id},
            status=HTTPStatus.OK,
        )
