from __future__ import annotations

import base64
import hashlib
import hmac
from typing import Any

import orjson
from fastapi import APIRouter, HTTPException, Request
from sqlalchemy.orm import Session

from galleryswap_api.core.config import Settings
from galleryswap_api.deps import DBSession
from galleryswap_api.eventlog import shop_from_request
from galleryswap_api.ingestion import InvalidEvent, ingest_order_paid

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def webhook_signature(secret: str, raw_body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def _verify_signature(*, request: Request, raw_body: bytes, settings: Settings) -> None:
    secret = str(settings.webhook_secret or "").strip()
    if not secret:
        raise HTTPException(status_code=401, detail="webhooks_disabled")
    sig = request.headers.get("X-Shopify-Hmac-Sha256")
    if not sig:
        raise HTTPException(status_code=401, detail="missing_signature")
    if not hmac.compare_digest(sig.strip(), webhook_signature(secret, raw_body)):
        raise HTTPException(status_code=401, detail="bad_signature")


@router.post("/orders-paid")
async def orders_paid(
    request: Request,
    db: Session = DBSession,
) -> dict[str, Any]:
    settings = Settings()
    raw = await request.body()
    _verify_signature(request=request, raw_body=raw, settings=settings)

    try:
        payload = orjson.loads(raw)
    except orjson.JSONDecodeError:
        raise HTTPException(status_code=400, detail="invalid_json") from None
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="invalid_payload")

    shop = request.headers.get("X-Shopify-Shop-Domain") or shop_from_request(request)
    try:
        result = ingest_order_paid(db, order=payload, shop=shop)
    except InvalidEvent as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return {
        "ok": True,
        "order_id": result.order_id,
        "recorded": result.recorded,
        "enriched": result.enriched,
        "attributed": result.attributed,
    }
