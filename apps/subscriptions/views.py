# subscriptions/views.py

"""
Subscription plan changes and gateway webhooks.

    PATCH  /subscriptions/<id>/downgrade
    PATCH  /subscriptions/<id>/upgrade
    PATCH  /subscriptions/<id>/cancel
    POST   /payments/webhooks/stripe/
    POST   /payments/webhooks/chapa/
"""

import logging

from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods

from fees.api import api_view, bind_form, parse_json_body, success_response
from subscriptions.forms import TRANSITION_FIELDS, TransitionForm
from subscriptions.services import SubscriptionTransitionService, TransitionDirection
from subscriptions.webhooks import (
    StripeEventHandler, chapa_signature_from_request, handle_chapa_event,
    verify_chapa_payload, verify_stripe_payload,
)
from utils.context import RequestContext
from utils.middleware import get_client_ip

logger = logging.getLogger(__name__)


def _transition(request, pk, direction):
    data = bind_form(TransitionForm, parse_json_body(request), TRANSITION_FIELDS)

    result = SubscriptionTransitionService().transition(
        pk,
        data['new_package_id'],
        direction,
        staff=request.staff,
    )

    if result.is_credit:
        message = f"Subscription downgraded; {abs(result.net_amount)} credited."
    else:
        message = f"Subscription {direction.value}d; {result.net_amount} charged."
    return success_response({'message': message, 'transition': result.as_dict()})


@require_http_methods(["PATCH"])
@api_view()
def downgrade_subscription(request, pk):
    return _transition(request, pk, TransitionDirection.DOWNGRADE)


@require_http_methods(["PATCH"])
@api_view()
def upgrade_subscription(request, pk):
    return _transition(request, pk, TransitionDirection.UPGRADE)


@require_http_methods(["PATCH"])
@api_view()
def cancel_subscription(request, pk):
    subscription = SubscriptionTransitionService().cancel(pk, staff=request.staff)
    return success_response({
        'message': "Subscription cancelled.",
        'subscriptionId': str(subscription.pk),
        'status': subscription.status,
    })


# =============================================================================
# WEBHOOKS
# =============================================================================

@csrf_exempt
@require_http_methods(["POST"])
@api_view(require_staff=False)
def stripe_webhook(request):
    event = verify_stripe_payload(request.body, request.META.get('HTTP_STRIPE_SIGNATURE', ''))

    with RequestContext(ip_address=get_client_ip(request), request_path='webhook:stripe'):
        outcome = StripeEventHandler().handle(event)

    return success_response({'received': True, **outcome.as_dict()})


@csrf_exempt
@require_http_methods(["POST"])
@api_view(require_staff=False)
def chapa_webhook(request):
    data = verify_chapa_payload(request.body, chapa_signature_from_request(request))

    with RequestContext(ip_address=get_client_ip(request), request_path='webhook:chapa'):
        outcome = handle_chapa_event(data)

    return success_response({'received': True, **outcome.as_dict()})
