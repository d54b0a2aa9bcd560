from .api import DashboardApiClient, DashboardApiError
from .cart import CartItem, CartStore, JsonFileCartStorage, MemoryCartStorage
from .checkout import (
    BatchOutcome,
    CheckoutError,
    CheckoutInProgressError,
    CheckoutItemError,
    CheckoutOrchestrator,
    CheckoutResult,
    CheckoutValidationError,
    classify_batch,
)
from .confirmation import (
    ConfirmationOutcome,
    PaymentConfirmationError,
    PaymentConfirmationHandler,
    PendingConfirmation,
    StripeJsConfirmer,
    pending_from_incomplete,
)

__all__ = [
    "BatchOutcome",
    "CartItem",
    "CartStore",
    "CheckoutError",
    "CheckoutInProgressError",
    "CheckoutItemError",
    "CheckoutOrchestrator",
    "CheckoutResult",
    "CheckoutValidationError",
    "ConfirmationOutcome",
    "DashboardApiClient",
    "DashboardApiError",
    "JsonFileCartStorage",
    "MemoryCartStorage",
    "PaymentConfirmationError",
    "PaymentConfirmationHandler",
    "PendingConfirmation",
    "StripeJsConfirmer",
    "classify_batch",
    "pending_from_incomplete",
]
