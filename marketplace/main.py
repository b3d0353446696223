import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import uvicorn

from .auctions import BidService
from .auth import User, current_user
from .errors import MarketplaceError, RateLimited, ValidationFailed
from .metrics import Metrics
from .models import BidRequest, BidResponse, Order, OrderActionRequest, PaymentIntentResponse
from .notifications import Notifier
from .orders import OrderService
from .payments import CheckoutService, PaymentProviderError
from .ratelimit import RateLimiter
from .settings import LOG_LEVEL
from .store import PostgresStore
from .webhooks import Reconciler, WebhookGate

logger = logging.getLogger(__name__)

router = APIRouter()


def _services(request: Request):
    return request.app.state


@router.get("/health")
def health():
    return {"ok": True}


@router.get("/metrics")
def metrics(state=Depends(_services)):
    return state.metrics.snapshot()


@router.post("/webhooks/payment")
async def payment_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    state=Depends(_services),
):
    """
    Replay-safe: the event id is claimed before anything is applied;
    duplicates are acknowledged with idempotent=true.
    """
    body = await request.body()
    event = state.webhook_gate.admit(body, stripe_signature)

    try:
        outcome = await run_in_threadpool(state.reconciler.process, event)
    except Exception:
        # the claim was rolled back with everything else; a 5xx makes the provider retry
        logger.exception(
            "Webhook processing failed for event %s (request %s)", event.id, request.state.request_id
        )
        state.metrics.increment("webhook_failed", event_type=event.type)
        return JSONResponse(status_code=500, content={"error": "Webhook processing failed"})

    resp = {"received": True}
    if outcome.idempotent:
        resp["idempotent"] = True
    return resp


@router.post("/bids", response_model=BidResponse)
def place_bid(req: BidRequest, user: User = Depends(current_user), state=Depends(_services)):
    return state.bids.place(user.id, req.listing_id, req.amount_cents, req.proxy_max_cents)


@router.get("/orders/{order_id}", response_model=Order)
def get_order(order_id: str, user: User = Depends(current_user), state=Depends(_services)):
    return state.orders.get(user.id, order_id)


@router.post("/orders/{order_id}/actions")
def order_action(order_id: str, req: OrderActionRequest, user: User = Depends(current_user),
                 state=Depends(_services)):
    order = state.orders.perform(user.id, order_id, req.action)
    return {"success": True, "state": order["state"], "order": Order.model_validate(order).model_dump(mode="json")}


@router.post("/orders/{order_id}/payment-intent", response_model=PaymentIntentResponse)
def create_payment_intent(order_id: str, user: User = Depends(current_user), state=Depends(_services)):
    return state.checkout.create_payment_intent(user.id, order_id)


async def request_id_middleware(request: Request, call_next):
    request.state.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    response = await call_next(request)
    response.headers["X-Request-ID"] = request.state.request_id
    return response


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "-")


async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    headers = {}
    if isinstance(exc, RateLimited):
        headers["Retry-After"] = str(max(1, int(exc.retry_after + 0.999)))
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def validation_error_handler(request: Request, exc: RequestValidationError):
    fields = {}
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body") or "body"
        fields[loc] = err.get("msg", "invalid")
    error = ValidationFailed("Invalid request", fields=fields)
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


async def provider_error_handler(request: Request, exc: PaymentProviderError):
    return JSONResponse(
        status_code=500,
        content={"error": "Payment provider unavailable", "request_id": _request_id(request)},
    )


async def unhandled_error_handler(request: Request, exc: Exception):
    request_id = _request_id(request)
    logger.error("Unhandled error on %s %s (request %s)", request.method, request.url.path, request_id,
                 exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error", "request_id": request_id})


def create_app(store=None, rate_limiter=None, metrics=None, webhook_gate=None) -> FastAPI:
    app = FastAPI(title="Auction Marketplace", version="0.1.0")

    store = store or PostgresStore()
    metrics = metrics or Metrics()
    rate_limiter = rate_limiter or RateLimiter()
    notifier = Notifier(store, metrics)

    app.state.store = store
    app.state.metrics = metrics
    app.state.rate_limiter = rate_limiter
    app.state.webhook_gate = webhook_gate or WebhookGate(metrics=metrics)
    app.state.reconciler = Reconciler(store, notifier, metrics)
    app.state.bids = BidService(store, rate_limiter, metrics)
    app.state.orders = OrderService(store, rate_limiter, notifier, metrics)
    app.state.checkout = CheckoutService(store, metrics)

    app.middleware("http")(request_id_middleware)
    app.add_exception_handler(MarketplaceError, marketplace_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(PaymentProviderError, provider_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run("marketplace.main:app", host="0.0.0.0", port=8000)
