"""Routes for rail webhook handling."""
from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from app.db import get_db
from app.services import psp_webhooks
from app.utils.errors import error_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/psp", tags=["psp"])


@router.post("/stripe/webhook", status_code=status.HTTP_200_OK)
async def stripe_webhook(request: Request, db: Session = Depends(get_db)) -> dict:
    return await psp_webhooks.handle_stripe_webhook(request, db)


@router.post("/payout/webhook", status_code=status.HTTP_200_OK)
async def payout_webhook(request: Request, db: Session = Depends(get_db)) -> dict:
    raw_body = await request.body()
    headers = {k: v for k, v in request.headers.items()}

    psp_webhooks.verify_psp_webhook_signature(raw_body, headers)

    try:
        payload = json.loads(raw_body)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response("WEBHOOK_PAYLOAD_INVALID", "Webhook body must be JSON."),
        )
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response("WEBHOOK_PAYLOAD_INVALID", "Webhook body must be a JSON object."),
        )

    result = psp_webhooks.process_payout_event(db, payload)
    logger.info("Payout webhook processed", extra={"event": payload.get("event"), "matched": result["matched"]})
    return result


__all__ = ["router"]
