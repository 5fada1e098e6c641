"""Webhook delivery endpoint."""
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from api.deps import get_engine
from monitor import Engine
from monitor.webhook import SIGNATURE_HEADER, WebhookPayloadError, verify_signature

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/webhooks",
    tags=["Webhooks"]
)


@router.post("/alchemy")
async def alchemy_webhook(request: Request, engine: Engine = Depends(get_engine)):
    """Apply the tracked-contract logs of pushed transactions.

    Responds 500 when any transaction failed to apply so the provider
    redelivers it.
    """
    body = await request.body()

    signing_key = engine.settings.get('webhook_signing_key')
    if signing_key and not verify_signature(body, request.headers.get(SIGNATURE_HEADER), signing_key):
        logger.warning("Rejected webhook with bad signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid signature"
        )

    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Body is not valid JSON"
        )

    try:
        results = await engine.webhook.ingest_payload(payload)
    except WebhookPayloadError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )

    failed = [result.tx_hash for result in results if result.errors]
    if failed:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to apply {', '.join(failed)}"
        )

    return {"transactions": [result.to_dict() for result in results]}
