import logging
from typing import Optional

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from context import BookingContext
from payments.checkout import apply_gateway_event
from payments.gateway import to_gateway_event, verify_gateway_event

logger = logging.getLogger(__name__)

router = APIRouter()


def handle_stripe_event(ctx: BookingContext, payload: bytes, sig_header: Optional[str]) -> dict:
    """
    Verify a Stripe delivery and apply it. Raises GatewayVerificationError before touching
    any state if the signature does not check out.
    """
    event = verify_gateway_event(payload, sig_header, ctx.settings.stripe_webhook_secret)
    gateway_event = to_gateway_event(event)
    if gateway_event is None:
        logger.info("Unhandled event type %s", event.get("type"))
        return {"received": True, "handled": False}
    payment = apply_gateway_event(ctx, gateway_event)
    return {
        "received": True,
        "handled": payment is not None,
        "payment_status": payment.status if payment else None,
    }


@router.post("/webhook/stripe")
async def stripe_webhook(request: Request, stripe_signature: str = Header(None)):
    payload = await request.body()
    sig_header = stripe_signature or request.headers.get("stripe-signature")
    ctx = request.app.state.ctx
    # the gateway retries on its own; a verification failure is answered with 400 by the app handler
    result = await run_in_threadpool(handle_stripe_event, ctx, payload, sig_header)
    return JSONResponse(content=result)
