from .payment_events import forget_event, record_event
from .stripe_customers import get_customer_id_for_user, get_user_id_by_customer
from .subscriptions import (
    get_by_stripe_id,
    get_for_user,
    insert_subscription,
    list_by_status,
    list_for_user,
    list_for_user_service,
    update_status,
)
from .users import get_billing_profile, get_user

__all__ = [
    "forget_event",
    "get_billing_profile",
    "get_by_stripe_id",
    "get_customer_id_for_user",
    "get_for_user",
    "get_user",
    "get_user_id_by_customer",
    "insert_subscription",
    "list_by_status",
    "list_for_user",
    "list_for_user_service",
    "record_event",
    "update_status",
]
