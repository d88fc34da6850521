"""
Stripe client wrapper.

All calls to the billing provider go through here so that provider failures
surface as ExternalServiceError to synchronous admin flows.
"""
import json
import logging
from typing import Optional

import stripe

from app.config import STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET
from app.errors import ExternalServiceError, InvalidSignature

logger = logging.getLogger(__name__)

stripe.api_key = STRIPE_SECRET_KEY


def construct_event(payload: bytes, signature: Optional[str], secret: Optional[str] = None) -> dict:
    """
    Verify a webhook delivery against the raw request body and return the
    event as a plain dict.

    Raises:
        InvalidSignature: missing/invalid signature or malformed payload
    """
    secret = secret if secret is not None else STRIPE_WEBHOOK_SECRET
    if not secret:
        raise InvalidSignature("Webhook secret is not configured")
    if not signature:
        raise InvalidSignature("Missing Stripe-Signature header")

    try:
        stripe.Webhook.construct_event(payload, signature, secret)
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        raise InvalidSignature(f"Webhook Error: {e}")
    except ValueError as e:
        logger.warning(f"Invalid webhook payload: {e}")
        raise InvalidSignature("Webhook Error: invalid payload")

    return json.loads(payload)


def retrieve_payment_intent(payment_intent_id: str) -> dict:
    try:
        intent = stripe.PaymentIntent.retrieve(payment_intent_id)
    except stripe.StripeError as e:
        logger.error(f"Stripe PaymentIntent.retrieve({payment_intent_id}) failed: {e}")
        raise ExternalServiceError(f"Could not fetch payment {payment_intent_id} from Stripe")
    return {
        "id": intent["id"],
        "amount": intent["amount"],
        "currency": intent["currency"],
        "status": intent["status"],
    }


def create_refund(payment_intent_id: str, amount: Optional[int] = None, reason: Optional[str] = None) -> dict:
    params = {"payment_intent": payment_intent_id}
    if amount is not None:
        params["amount"] = amount
    if reason:
        params["metadata"] = {"reason": reason}

    try:
        refund = stripe.Refund.create(**params)
    except stripe.StripeError as e:
        logger.error(f"Stripe refund for {payment_intent_id} failed: {e}")
        raise ExternalServiceError(f"Refund failed: {getattr(e, 'user_message', None) or e}")
    return {"id": refund["id"], "status": refund["status"], "amount": refund["amount"]}
