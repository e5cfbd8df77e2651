"""
Lead Scraper Checkout Server
============================
FastAPI server with:
- GET  /api/config                   non-secret front-end defaults
- POST /api/create-checkout-session  validate, price, open Stripe Checkout
- POST /api/stripe-webhook           verified payment events → fulfillment
- GET  /health                       liveness + configuration summary

pip install fastapi uvicorn pydantic stripe httpx structlog
"""

import asyncio
import os
import time
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

import structlog
import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from pipeline.agents.agent1_checkout_intake import CheckoutIntake
from pipeline.agents.agent2_payment_gateway import PaymentGateway, get_payment_gateway
from pipeline.errors import CheckoutValidationError, JobTriggerError, StorageError, VerificationError
from service_config import ServiceConfig, configure_logging, get_config
from tasks.order_sweeper import sweeper_loop

VERSION = "1.0.0"

configure_logging()
logger = structlog.get_logger().bind(component="server")


# =============================================================================
# DEPENDENCIES
# =============================================================================

_intake: Optional[CheckoutIntake] = None


def get_checkout_intake() -> CheckoutIntake:
    """Get or create the singleton checkout intake."""
    global _intake
    if _intake is None:
        _intake = CheckoutIntake()
    return _intake


# =============================================================================
# LIFESPAN MANAGEMENT
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    config = get_config()
    logger.info("server_starting",
                version=VERSION,
                notifications=config.notifications_enabled,
                job_trigger=config.job_trigger_configured)

    sweeper = asyncio.create_task(sweeper_loop(config))

    yield

    logger.info("server_shutting_down")
    sweeper.cancel()
    with suppress(asyncio.CancelledError):
        await sweeper


# =============================================================================
# FASTAPI APP
# =============================================================================

app = FastAPI(
    title="Apollo Lead Scraper Checkout",
    description="Paid Apollo.io lead scraping: checkout, payment confirmation, delivery",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().cors_origins,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type"],
)


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class CheckoutRequest(BaseModel):
    """Lead order from the front-end form. Validated by CheckoutIntake."""
    leads: Any = None
    apolloUrl: Optional[str] = None
    email: Optional[str] = None
    cleanOutput: bool = False


class CheckoutResponse(BaseModel):
    url: str
    sessionId: str


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float
    notification_configured: bool
    job_trigger_configured: bool


START_TIME = datetime.now(timezone.utc)


# =============================================================================
# MIDDLEWARE
# =============================================================================

@app.middleware("http")
async def add_timing_header(request: Request, call_next):
    """Add response timing and request ID headers"""
    request_id = str(uuid4())[:8]
    start = time.perf_counter()

    response = await call_next(request)

    duration = (time.perf_counter() - start) * 1000
    response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
    response.headers["X-Request-ID"] = request_id
    return response


# =============================================================================
# HEALTH & CONFIG
# =============================================================================

@app.get("/health", response_model=HealthResponse)
async def health_check(config: ServiceConfig = Depends(get_config)):
    return HealthResponse(
        status="healthy",
        version=VERSION,
        uptime_seconds=(datetime.now(timezone.utc) - START_TIME).total_seconds(),
        notification_configured=config.notifications_enabled,
        job_trigger_configured=config.job_trigger_configured,
    )


@app.get("/api/config")
async def public_config(config: ServiceConfig = Depends(get_config)):
    """Front-end defaults. Never includes tokens, keys or webhook URLs."""
    return {
        "APOLLO_ACTOR_ID": config.apollo_actor_id,
        "DEFAULT_SETTINGS": {
            "maxLeads": config.max_leads,
            "minLeads": config.min_leads,
            "defaultLeads": config.default_leads,
            "timeout": 3600000,
        },
        "API": {
            "baseUrl": config.apify_base_url,
            "timeout": int(config.job_trigger_timeout * 1000),
        },
        "FEATURES": {
            "emailNotifications": config.notifications_enabled,
        },
    }


# =============================================================================
# CHECKOUT
# =============================================================================

def _request_base_url(request: Request) -> Optional[str]:
    return request.headers.get("origin") or None


@app.post("/api/create-checkout-session", response_model=CheckoutResponse)
async def create_checkout_session(
    body: CheckoutRequest,
    request: Request,
    intake: CheckoutIntake = Depends(get_checkout_intake),
):
    try:
        result = await intake.create_checkout(
            leads=body.leads,
            apollo_url=body.apolloUrl,
            email=body.email,
            clean_output=body.cleanOutput,
            base_url=_request_base_url(request),
        )
    except CheckoutValidationError as e:
        return JSONResponse(status_code=e.status_code, content={"error": e.message})

    return CheckoutResponse(url=result.url, sessionId=result.session_id)


# =============================================================================
# STRIPE WEBHOOK
# =============================================================================

@app.post("/api/stripe-webhook")
async def stripe_webhook(
    request: Request,
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """
    Raw body is read untouched: the signature covers the exact bytes.
    4xx on bad signature, 5xx when Stripe should redeliver, 200 otherwise.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        return await gateway.process_webhook(payload, signature)
    except VerificationError as e:
        return JSONResponse(
            status_code=400,
            content={"error": f"Webhook signature verification failed: {e}"},
        )
    except (JobTriggerError, StorageError) as e:
        logger.error("webhook_processing_failed",
                     error=str(e),
                     error_type=type(e).__name__,
                     session_id=e.session_id)
        return JSONResponse(
            status_code=500,
            content={"error": "Fulfillment failed; awaiting redelivery"},
        )


if __name__ == "__main__":
    uvicorn.run(
        "api.server:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )
