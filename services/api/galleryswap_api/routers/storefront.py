from __future__ import annotations

from typing import Any

import orjson
from fastapi import APIRouter, Request, Response
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from galleryswap_api.core.config import Settings
from galleryswap_api.deps import DBSession
from galleryswap_api.ingestion import (
    find_active_experiment,
    normalize_product_id,
    normalize_variant_id,
)
from galleryswap_api.models import Experiment
from galleryswap_api.rate_limit import check_rate_limit_dual
from galleryswap_api.rotation import load_media_ids
from galleryswap_api.scheduler import hero_targets

router = APIRouter(prefix="/api/storefront", tags=["storefront"])


class ActiveCaseOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(..., alias="productId")
    experiment_id: str | None = Field(default=None, alias="experimentId")
    observed_case: str | None = Field(default=None, alias="observedCase")
    gallery_media_urls: list[str] = Field(default_factory=list, alias="galleryMediaUrls")
    hero_media_url: str | None = Field(default=None, alias="heroMediaUrl")


def _media_urls(row: Experiment) -> dict[str, str]:
    try:
        obj: Any = orjson.loads(row.media_urls_json or "{}")
    except orjson.JSONDecodeError:
        return {}
    if not isinstance(obj, dict):
        return {}
    return {str(k): str(v) for k, v in obj.items() if v}


def resolve_active_case(
    db: Session, *, product_id: str, variant_id: str | None = None
) -> ActiveCaseOut:
    pid = normalize_product_id(product_id) or str(product_id)
    row = find_active_experiment(db, product_id=pid)
    if row is None:
        return ActiveCaseOut(productId=pid)

    case = str(row.current_case)
    urls = _media_urls(row)
    media = load_media_ids(row.base_media_json if case == "BASE" else row.test_media_json)
    hero_url: str | None = None
    vid = normalize_variant_id(variant_id)
    if vid:
        hero_id = hero_targets(list(row.variant_overrides), case).get(vid)
        hero_url = urls.get(hero_id) if hero_id else None
    return ActiveCaseOut(
        productId=pid,
        experimentId=row.id,
        observedCase=case,
        galleryMediaUrls=[urls[m] for m in media if m in urls],
        heroMediaUrl=hero_url,
    )


@router.get("/active-case/{product_id:path}", response_model=ActiveCaseOut, response_model_by_alias=True)
def active_case(
    product_id: str,
    request: Request,
    response: Response,
    variant_id: str | None = None,
    db: Session = DBSession,
) -> ActiveCaseOut:
    settings = Settings()
    check_rate_limit_dual(
        subject=None,
        request=request,
        action="active_case",
        per_minute_subject=0,
        per_hour_subject=0,
        per_minute_ip=int(settings.rate_limit_active_case_per_minute_ip),
        per_hour_ip=int(settings.rate_limit_active_case_per_hour_ip),
    )
    out = resolve_active_case(db, product_id=product_id, variant_id=variant_id)
    response.headers["Cache-Control"] = (
        f"public, max-age={max(0, int(settings.active_case_cache_sec))}"
    )
    return out
