from __future__ import annotations

import hmac

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from galleryswap_api.catalog import CatalogClient, get_catalog_client
from galleryswap_api.core.config import Settings
from galleryswap_api.db import SessionLocal


def get_db() -> Session:
    with SessionLocal() as session:
        yield session


def get_catalog() -> CatalogClient:
    return get_catalog_client()


def require_admin(x_admin_token: str | None = Header(default=None)) -> None:
    expected = str(Settings().admin_token or "").strip()
    if not expected:
        raise HTTPException(status_code=401, detail="admin_disabled")
    if not hmac.compare_digest(str(x_admin_token or "").strip(), expected):
        raise HTTPException(status_code=401, detail="unauthorized")


def require_cron(
    authorization: str | None = Header(default=None),
    x_cron: str | None = Header(default=None),
) -> str:
    """Scheduled trigger auth: ``Bearer <cron_secret>``, or the platform
    cron header when the deployment opts in. Returns how it was admitted."""
    settings = Settings()
    secret = str(settings.cron_secret or "").strip()
    if secret and authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1].strip()
        if hmac.compare_digest(token, secret):
            return "secret"
    if settings.trust_cron_header and str(x_cron or "").strip() == "1":
        return "header"
    if not secret and not settings.trust_cron_header:
        raise HTTPException(status_code=401, detail="cron_disabled")
    raise HTTPException(status_code=401, detail="unauthorized")


DBSession = Depends(get_db)
Catalog = Depends(get_catalog)
AdminOnly = Depends(require_admin)
CronOnly = Depends(require_cron)
