from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from galleryswap_api.core.config import Settings
from galleryswap_api.deps import DBSession
from galleryswap_api.eventlog import request_meta, shop_from_request
from galleryswap_api.ingestion import InvalidEvent, ingest_event, purchase_dedup_key
from galleryswap_api.rate_limit import check_rate_limit_dual

router = APIRouter(prefix="/api/events", tags=["events"])


class TrackEventRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId", min_length=1, max_length=128)
    event_type: Literal["IMPRESSION", "ADD_TO_CART", "PURCHASE"] = Field(
        ..., alias="eventType"
    )
    product_id: str = Field(..., alias="productId", min_length=1, max_length=200)
    variant_id: str | None = Field(default=None, alias="variantId", max_length=200)
    # Client hint only; the server attributes by the experiment's live case.
    observed_case: Literal["BASE", "TEST"] | None = Field(default=None, alias="observedCase")
    revenue: float | None = Field(default=None, ge=0)
    quantity: int | None = Field(default=None, ge=0)
    meta: dict[str, Any] = Field(default_factory=dict)


class TrackEventResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    accepted: bool = True
    observed_case: str | None = Field(default=None, alias="observedCase")
    deduplicated: bool = False


@router.post("/track", response_model=TrackEventResponse, response_model_by_alias=True)
def track(
    req: TrackEventRequest,
    request: Request,
    db: Session = DBSession,
) -> TrackEventResponse:
    settings = Settings()
    check_rate_limit_dual(
        subject=req.session_id,
        request=request,
        action="events_track",
        per_minute_subject=int(settings.rate_limit_events_track_per_minute),
        per_hour_subject=int(settings.rate_limit_events_track_per_hour),
        per_minute_ip=int(settings.rate_limit_events_track_per_minute_ip),
        per_hour_ip=int(settings.rate_limit_events_track_per_hour_ip),
        extra_detail={"event_type": req.event_type},
    )

    dedup_key = (
        purchase_dedup_key(
            meta=req.meta, product_id=req.product_id, variant_id=req.variant_id
        )
        if req.event_type == "PURCHASE"
        else None
    )
    meta: dict[str, Any] = dict(req.meta or {})
    meta.update(request_meta(request))
    try:
        result = ingest_event(
            db,
            session_id=req.session_id,
            event_type=req.event_type,
            product_id=req.product_id,
            variant_id=req.variant_id,
            revenue=req.revenue,
            quantity=req.quantity,
            client_case=req.observed_case,
            shop=shop_from_request(request),
            meta=meta,
            dedup_key=dedup_key,
        )
    except InvalidEvent as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return TrackEventResponse(
        accepted=result.accepted,
        observedCase=result.observed_case,
        deduplicated=result.deduplicated,
    )
