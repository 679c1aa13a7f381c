from __future__ import annotations

import hashlib
from datetime import UTC, datetime
from typing import Any

import orjson
from fastapi import Request

from galleryswap_api.core.config import Settings


def _hash_with_secret(*, raw: str | None) -> str | None:
    value = str(raw or "").strip()
    if not value:
        return None
    secret = Settings().hash_secret
    return hashlib.sha256(f"{value}|{secret}".encode("utf-8")).hexdigest()


def ip_hash_from_request(request: Request | None) -> str | None:
    if request is None:
        return None
    ip = getattr(getattr(request, "client", None), "host", None)
    return _hash_with_secret(raw=str(ip or ""))


def user_agent_hash_from_request(request: Request | None) -> str | None:
    if request is None:
        return None
    ua = request.headers.get("user-agent")
    return _hash_with_secret(raw=str(ua or ""))


def shop_from_request(request: Request | None) -> str | None:
    if request is None:
        return None
    # App-proxy requests carry the shop domain as a query param.
    value = str(
        request.query_params.get("shop") or request.headers.get("x-shop-domain") or ""
    ).strip()
    return value[:160] if value else None


def _ua_platform(ua: str) -> str:
    ua_l = str(ua or "").lower()
    if "android" in ua_l:
        return "android"
    if "iphone" in ua_l or "ipad" in ua_l or "ipod" in ua_l:
        return "ios"
    return "desktop"


def request_meta(request: Request | None) -> dict[str, Any]:
    """Server-side request facts merged into stored event metadata.

    Hashed only; raw ip / user agent are never persisted.
    """
    if request is None:
        return {}
    out: dict[str, Any] = {}
    ip_hash = ip_hash_from_request(request)
    ua_hash = user_agent_hash_from_request(request)
    if ip_hash:
        out["ip_hash"] = ip_hash
    if ua_hash:
        out["user_agent_hash"] = ua_hash
    try:
        out["ua_platform"] = _ua_platform(str(request.headers.get("user-agent") or ""))
        referer = str(request.headers.get("referer") or "").strip()
        if referer:
            out["referer"] = referer[:400]
    except Exception:  # noqa: BLE001
        pass
    return out


def log_json(payload: dict[str, Any]) -> None:
    try:
        print(orjson.dumps(payload, default=str).decode("utf-8"), flush=True)
    except Exception:  # noqa: BLE001
        pass


def log(component: str, message: str, *, level: str = "info", **fields: Any) -> None:
    if Settings().log_json:
        log_json(
            {
                "ts": datetime.now(UTC).isoformat(),
                "level": level,
                "component": component,
                "msg": message,
                **fields,
            }
        )
        return
    extra = " ".join(f"{k}={v}" for k, v in fields.items() if v is not None)
    print(f"[{component}] {message}" + (f" {extra}" if extra else ""), flush=True)
