"""
Webhooks Router - Stripe event delivery
"""
from typing import Optional

from fastapi import APIRouter, Header, Request
from starlette.concurrency import run_in_threadpool

from app.services.billing import construct_event
from app.services.subscription_sync import handle_event

router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])


@router.post("/stripe")
async def stripe_webhook(request: Request, stripe_signature: Optional[str] = Header(None)):
    """
    Verify the signature against the raw body, then apply the event.
    A bad signature is rejected with 400 before any state changes; anything
    after that is acknowledged so Stripe does not retry.
    """
    payload = await request.body()
    event = construct_event(payload, stripe_signature)
    return await run_in_threadpool(handle_event, event)
