"""Services handling rail webhook callbacks.

Deliveries are at-least-once. Handlers only overwrite stored rail signals, so
processing the same event twice leaves the payment exactly as once did.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
import time
from datetime import datetime
from typing import Any, Mapping

import stripe
from fastapi import HTTPException, Request, status
from sqlalchemy.orm import Session

from app.config import get_settings
from app.models.payment import Payment
from app.services import payments as payments_service
from app.services.psp_stripe import construct_webhook_event
from app.utils.errors import error_response

logger = logging.getLogger(__name__)

# Stripe PaymentIntent events → local payment status.
STRIPE_INTENT_EVENTS = {
    "payment_intent.succeeded": "completed",
    "payment_intent.processing": "processing",
    "payment_intent.payment_failed": "failed",
    "payment_intent.canceled": "failed",
}

# Payout-rail events → (local status, transfer status).
PAYOUT_EVENTS = {
    "payment.completed": ("completed", "succeeded"),
    "payment.processing": ("processing", "processing"),
    "payment.failed": ("failed", "failed"),
    "payment.cancelled": ("failed", "failed"),
}


def _current_settings():
    return get_settings()


def _current_secrets() -> tuple[str | None, str | None]:
    settings = _current_settings()
    return settings.psp_webhook_secret, settings.psp_webhook_secret_next


# ---------------------------------------------------------------- Stripe


async def handle_stripe_webhook(request: Request, db: Session) -> dict[str, Any]:
    """Verify a Stripe webhook and apply PaymentIntent events."""

    settings = _current_settings()
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("Stripe webhook received without a configured secret")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=error_response(
                "STRIPE_NOT_CONFIGURED",
                "Stripe webhook secret is missing; configure STRIPE_WEBHOOK_SECRET.",
            ),
        )

    payload = await request.body()
    sig_header = request.headers.get("Stripe-Signature")
    if not sig_header:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response("STRIPE_SIGNATURE_MISSING", "Stripe-Signature header is required."),
        )

    try:
        event = construct_webhook_event(payload, sig_header, settings.STRIPE_WEBHOOK_SECRET)
    except stripe.SignatureVerificationError:
        logger.warning("Stripe signature verification failed")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response("STRIPE_SIGNATURE_INVALID", "Invalid Stripe signature."),
        )
    except ValueError:
        logger.warning("Failed to parse Stripe webhook event")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response("STRIPE_EVENT_INVALID", "Invalid Stripe webhook payload."),
        )

    return process_stripe_event(db, event)


def process_stripe_event(db: Session, event: Mapping[str, Any]) -> dict[str, Any]:
    event_type = event.get("type") or ""
    logger.info("Stripe webhook received", extra={"event_type": event_type, "event_id": event.get("id")})

    local_status = STRIPE_INTENT_EVENTS.get(event_type)
    if local_status is None:
        logger.info("Unhandled Stripe event type", extra={"event_type": event_type})
        return {"received": True, "matched": False}

    intent = (event.get("data") or {}).get("object") or {}
    payment = _find_stripe_payment(db, intent)
    if payment is None:
        logger.warning(
            "Stripe event for unknown payment",
            extra={"event_type": event_type, "metadata": dict(intent.get("metadata") or {})},
        )
        return {"received": True, "matched": False}

    transfer_status = None
    if event_type == "payment_intent.succeeded" and (intent.get("transfer_data") or {}).get("destination"):
        # Destination charge: the transfer to the contractor settles with the charge.
        transfer_status = "succeeded"

    if not payment.payment_intent_id and intent.get("id"):
        payment.payment_intent_id = intent["id"]

    payments_service.apply_rail_status(
        db,
        payment,
        status=local_status,
        intent_status=intent.get("status"),
        transfer_status=transfer_status,
        source="stripe_webhook",
    )
    return {"received": True, "matched": True, "payment_id": payment.id}


def _find_stripe_payment(db: Session, intent: Mapping[str, Any]) -> Payment | None:
    metadata = intent.get("metadata") or {}
    payment_id = metadata.get("paymentId")
    if payment_id is not None:
        try:
            payment = db.get(Payment, int(payment_id))
        except (TypeError, ValueError):
            payment = None
        if payment is not None:
            return payment
    if intent.get("id"):
        return payments_service.find_payment_by_rail_ref(db, intent["id"])
    return None


# ------------------------------------------------------------- payout rail


def _validate_psp_timestamp(ts_seconds: int, secrets_info: Mapping[str, str | None]) -> None:
    settings = _current_settings()
    max_drift = settings.psp_webhook_max_drift_seconds
    age = abs(int(time.time()) - ts_seconds)

    if age > max_drift:
        logger.warning(
            "Payout webhook timestamp outside allowed window",
            extra={"psp_secret_status": _masked_secret_status(secrets_info), "age": age},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response(
                "WEBHOOK_TIMESTAMP_DRIFT",
                "Webhook timestamp is outside allowed window.",
                {"age_seconds": age, "max_drift_seconds": max_drift},
            ),
        )


def _masked_secret_status(secrets_info: Mapping[str, str | None]) -> dict[str, str | None]:
    """Return deterministic markers instead of raw secrets for logging."""

    masked: dict[str, str | None] = {}
    for name, secret in secrets_info.items():
        if not secret:
            masked[name] = None
            continue
        digest = hashlib.sha256(secret.encode()).hexdigest()[:8]
        masked[name] = f"sha256:{digest}"
    return masked


def _get_header(headers: Mapping[str, str], key: str) -> str | None:
    for h_key, value in headers.items():
        if h_key.lower() == key.lower():
            return value
    return None


def compute_webhook_signature(secret: str, body: bytes, timestamp: str) -> str:
    """HMAC-SHA256 over ``"<timestamp>.<body>"``, hex encoded."""

    msg = f"{timestamp}.{body.decode('utf-8')}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), msg, hashlib.sha256).hexdigest()


def _parse_timestamp(ts: str, secrets_info: Mapping[str, str | None]) -> int:
    try:
        return int(float(ts))
    except (TypeError, ValueError):
        pass
    try:
        return int(datetime.fromisoformat(ts.replace("Z", "+00:00")).timestamp())
    except ValueError:
        logger.warning(
            "Invalid payout webhook timestamp format",
            extra={"psp_secret_status": _masked_secret_status(secrets_info)},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response("WEBHOOK_TIMESTAMP_INVALID", "Invalid timestamp format."),
        )


def verify_psp_webhook_signature(raw_body: bytes, headers: Mapping[str, str]) -> int:
    """Validate the payout-rail webhook signature and timestamp; raise on failure.

    Both the current and the next secret are accepted so the secret can be
    rotated without dropping deliveries.
    """

    provided_sig = _get_header(headers, "X-PSP-Signature")
    ts = _get_header(headers, "X-PSP-Timestamp")

    primary_secret, secondary_secret = _current_secrets()
    secrets = [s for s in (primary_secret, secondary_secret) if s]
    secrets_info = {"primary": primary_secret, "secondary": secondary_secret}
    if not secrets:
        logger.error(
            "Payout webhook secrets are not configured",
            extra={"psp_secret_status": _masked_secret_status(secrets_info)},
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=error_response(
                "WEBHOOK_SECRET_NOT_CONFIGURED",
                "Payout webhook secrets are not configured.",
            ),
        )

    if not provided_sig or not ts:
        logger.warning(
            "Missing payout webhook signature or timestamp",
            extra={"psp_secret_status": _masked_secret_status(secrets_info)},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response("WEBHOOK_SIGNATURE_MISSING", "Signature or timestamp header missing."),
        )

    ts_seconds = _parse_timestamp(ts, secrets_info)
    _validate_psp_timestamp(ts_seconds, secrets_info)

    for secret in secrets:
        expected = compute_webhook_signature(secret, raw_body, ts)
        if hmac.compare_digest(expected, provided_sig):
            return ts_seconds

    logger.warning(
        "Payout webhook signature mismatch",
        extra={"psp_secret_status": _masked_secret_status(secrets_info)},
    )
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=error_response("WEBHOOK_SIGNATURE_INVALID", "Invalid payout webhook signature."),
    )


def process_payout_event(db: Session, payload: Mapping[str, Any]) -> dict[str, Any]:
    """Apply a payout-rail payment event (``{"event": ..., "payment": {...}}``)."""

    event_name = payload.get("event") or payload.get("type") or ""
    rail_payment = payload.get("payment") or {}
    if not isinstance(rail_payment, Mapping) or not rail_payment.get("id"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response("WEBHOOK_PAYLOAD_INCOMPLETE", "Payout event is missing payment.id."),
        )

    mapped = PAYOUT_EVENTS.get(event_name)
    if mapped is None:
        logger.info("Unhandled payout event", extra={"event": event_name})
        return {"received": True, "matched": False}

    rail_payment_id = rail_payment["id"]
    batch_id = (rail_payment.get("batch") or {}).get("id")
    payment = payments_service.find_payment_by_rail_ref(db, rail_payment_id)
    if payment is None and batch_id:
        payment = payments_service.find_payment_by_rail_ref(db, batch_id)
    if payment is None:
        logger.warning("Payout event for unknown payment", extra={"event": event_name})
        return {"received": True, "matched": False}

    if not payment.transfer_id:
        payment.transfer_id = rail_payment_id

    local_status, transfer_status = mapped
    payments_service.apply_rail_status(
        db,
        payment,
        status=local_status,
        transfer_status=transfer_status,
        source="payout_webhook",
    )
    return {"received": True, "matched": True, "payment_id": payment.id}


__all__ = [
    "handle_stripe_webhook",
    "process_stripe_event",
    "process_payout_event",
    "verify_psp_webhook_signature",
    "compute_webhook_signature",
]
