# Pipeline Agents
# ===============
# Checkout intake → payment gateway → delivery

from .agent1_checkout_intake import (
    CheckoutIntake,
    CheckoutResult,
)
from .agent2_payment_gateway import (
    FulfillmentOrchestrator,
    PaymentEventVerifier,
    PaymentGateway,
    WebhookRouter,
    get_payment_gateway,
)
from .agent3_delivery_agent import (
    ApifyJobLauncher,
    EmailWebhookNotifier,
    INotificationChannel,
    IScrapeJobLauncher,
    ResultForwarder,
)

__all__ = [
    # Agent 1: Checkout Intake
    "CheckoutIntake",
    "CheckoutResult",
    # Agent 2: Payment Gateway
    "FulfillmentOrchestrator",
    "PaymentEventVerifier",
    "PaymentGateway",
    "WebhookRouter",
    "get_payment_gateway",
    # Agent 3: Delivery Agent
    "ApifyJobLauncher",
    "EmailWebhookNotifier",
    "INotificationChannel",
    "IScrapeJobLauncher",
    "ResultForwarder",
]
