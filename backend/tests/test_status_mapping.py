from datetime import datetime, timedelta, timezone

import pytest

from app.schemas import stripe_objects as so
from app.schemas.subscriptions import SubscriptionStatus
from app.services.payment_outcome import (
    PaymentOutcome,
    map_processor_status,
    period_bounds,
    resolve_local_status,
)
from app.services.subscription_webhooks import webhook_status


@pytest.mark.parametrize(
    "processor_status, expected",
    [
        ("active", SubscriptionStatus.active),
        ("trialing", SubscriptionStatus.trial),
        ("incomplete", SubscriptionStatus.inactive),
        ("past_due", SubscriptionStatus.inactive),
        ("canceled", SubscriptionStatus.inactive),
        ("unpaid", SubscriptionStatus.inactive),
        (None, SubscriptionStatus.inactive),
    ],
)
def test_map_processor_status(processor_status, expected):
    assert map_processor_status(processor_status) is expected


def test_successful_payment_wins_over_processor_status():
    outcome = PaymentOutcome(payment_status="succeeded")
    assert resolve_local_status("incomplete", outcome) is SubscriptionStatus.active


def test_trialing_subscription_is_recorded_as_trial():
    assert resolve_local_status("trialing", PaymentOutcome()) is SubscriptionStatus.trial


def test_incomplete_subscription_awaits_payment():
    assert resolve_local_status("incomplete", PaymentOutcome()) is SubscriptionStatus.pending_payment

    step_up = PaymentOutcome(payment_status="requires_action", requires_action=True)
    assert resolve_local_status("incomplete", step_up) is SubscriptionStatus.pending_payment


def test_other_processor_statuses_fall_back_to_three_way_map():
    assert resolve_local_status("past_due", PaymentOutcome()) is SubscriptionStatus.inactive


def test_apply_intent_only_requests_action_for_step_up_statuses():
    outcome = PaymentOutcome()
    outcome.apply_intent(
        so.PaymentIntent(id="pi_1", status="requires_payment_method", client_secret="pi_1_secret")
    )
    assert outcome.requires_action is False
    assert outcome.client_secret is None
    assert outcome.payment_status == "requires_payment_method"

    outcome.apply_intent(
        so.PaymentIntent(id="pi_2", status="requires_action", client_secret="pi_2_secret")
    )
    assert outcome.requires_action is True
    assert outcome.client_secret == "pi_2_secret"
    assert outcome.payment_intent_id == "pi_2"


@pytest.mark.parametrize(
    "processor_status, expected",
    [
        ("active", SubscriptionStatus.active),
        ("trialing", SubscriptionStatus.trial),
        ("incomplete", None),
        ("canceled", SubscriptionStatus.cancelled),
        ("incomplete_expired", SubscriptionStatus.cancelled),
        ("past_due", SubscriptionStatus.inactive),
        ("unpaid", SubscriptionStatus.inactive),
    ],
)
def test_webhook_status(processor_status, expected):
    assert webhook_status(processor_status) == expected


def test_period_bounds_prefer_item_level_periods():
    subscription = so.Subscription.model_validate(
        {
            "id": "sub_1",
            "status": "active",
            "items": {
                "data": [
                    {
                        "id": "si_1",
                        "current_period_start": 1735689600,
                        "current_period_end": 1738368000,
                    }
                ]
            },
        }
    )
    start, end = period_bounds(subscription)
    assert start == datetime(2025, 1, 1, tzinfo=timezone.utc)
    assert end == datetime(2025, 2, 1, tzinfo=timezone.utc)


def test_period_bounds_default_to_thirty_days():
    now = datetime(2025, 3, 1, tzinfo=timezone.utc)
    subscription = so.Subscription(id="sub_1", status="incomplete")
    start, end = period_bounds(subscription, now=now)
    assert start == now
    assert end - start == timedelta(days=30)
