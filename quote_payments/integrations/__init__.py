"""Payment processor integrations."""
from .fake_gateway import FakeGateway
from .gateway import ConfirmationOutcome, IntentHandle, PaymentGateway, RefundHandle
from .stripe_client import StripeGateway

__all__ = [
    "ConfirmationOutcome",
    "FakeGateway",
    "IntentHandle",
    "PaymentGateway",
    "RefundHandle",
    "StripeGateway",
]
