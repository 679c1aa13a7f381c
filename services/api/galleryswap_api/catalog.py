from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from galleryswap_api.core.config import Settings


@dataclass(frozen=True)
class CatalogResult:
    ok: bool
    item_id: str
    error: str | None = None
    retryable: bool = False
    status_code: int | None = None


class CatalogError(RuntimeError):
    pass


class CatalogClient(Protocol):
    def list_product_media(self, *, product_id: str) -> list[str]: ...
    def set_product_gallery_media(
        self, *, product_id: str, media_ids: list[str]
    ) -> CatalogResult: ...
    def set_variant_hero_media(
        self, *, product_id: str, variant_id: str, media_id: str
    ) -> CatalogResult: ...


@dataclass
class InMemoryCatalogClient:
    """Catalog stand-in for mock mode and tests.

    ``uploaded`` is the media each product owns; galleries and heroes record
    the last accepted writes. Failures are injected per call.
    """

    uploaded: dict[str, list[str]] = field(default_factory=dict)
    galleries: dict[str, list[str]] = field(default_factory=dict)
    heroes: dict[tuple[str, str], str] = field(default_factory=dict)
    calls: list[tuple[str, str, Any]] = field(default_factory=list)
    # Number of upcoming gallery writes that fail (retryable).
    gallery_failures: int = 0
    gallery_failure_retryable: bool = True
    failing_variants: set[str] = field(default_factory=set)

    def upload(self, *, product_id: str, media_ids: list[str]) -> None:
        have = self.uploaded.setdefault(str(product_id), [])
        for mid in media_ids:
            if str(mid) not in have:
                have.append(str(mid))

    def list_product_media(self, *, product_id: str) -> list[str]:
        self.calls.append(("list", str(product_id), None))
        return list(self.uploaded.get(str(product_id), []))

    def set_product_gallery_media(
        self, *, product_id: str, media_ids: list[str]
    ) -> CatalogResult:
        self.calls.append(("gallery", str(product_id), list(media_ids)))
        if self.gallery_failures > 0:
            self.gallery_failures -= 1
            return CatalogResult(
                ok=False,
                item_id=str(product_id),
                error="injected_gallery_failure",
                retryable=bool(self.gallery_failure_retryable),
            )
        have = set(self.uploaded.get(str(product_id), []))
        unknown = [m for m in media_ids if m not in have]
        if unknown:
            return CatalogResult(
                ok=False,
                item_id=str(product_id),
                error=f"unknown media: {','.join(unknown)}",
            )
        self.galleries[str(product_id)] = list(media_ids)
        return CatalogResult(ok=True, item_id=str(product_id))

    def set_variant_hero_media(
        self, *, product_id: str, variant_id: str, media_id: str
    ) -> CatalogResult:
        self.calls.append(("hero", str(variant_id), str(media_id)))
        if str(variant_id) in self.failing_variants:
            return CatalogResult(
                ok=False,
                item_id=str(variant_id),
                error="injected_hero_failure",
                retryable=True,
            )
        self.heroes[(str(product_id), str(variant_id))] = str(media_id)
        return CatalogResult(ok=True, item_id=str(variant_id))


def _retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


@dataclass
class HttpCatalogClient:
    base_url: str
    api_token: str | None = None
    timeout_sec: float = 10.0
    client: httpx.Client | None = None

    def _url(self, *parts: str) -> str:
        base = self.base_url.rstrip("/")
        return base + "/" + "/".join(quote(str(p), safe="") for p in parts)

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    def _request(
        self, method: str, url: str, *, json: dict[str, Any] | None = None
    ) -> httpx.Response:
        if self.client is not None:
            return self.client.request(
                method, url, json=json, headers=self._headers(), timeout=self.timeout_sec
            )
        return httpx.request(
            method, url, json=json, headers=self._headers(), timeout=self.timeout_sec
        )

    def _write(
        self, *, item_id: str, url: str, payload: dict[str, Any]
    ) -> CatalogResult:
        try:
            resp = self._request("POST", url, json=payload)
        except httpx.TimeoutException:
            return CatalogResult(ok=False, item_id=item_id, error="timeout", retryable=True)
        except httpx.HTTPError as exc:
            return CatalogResult(
                ok=False, item_id=item_id, error=str(exc)[:300], retryable=True
            )
        if not (200 <= resp.status_code < 300):
            return CatalogResult(
                ok=False,
                item_id=item_id,
                error=resp.text[:400] or f"HTTP {resp.status_code}",
                retryable=_retryable_status(resp.status_code),
                status_code=resp.status_code,
            )
        # 2xx can still carry per-item user errors.
        try:
            body = resp.json()
        except ValueError:
            body = {}
        errors = body.get("userErrors") if isinstance(body, dict) else None
        if errors:
            return CatalogResult(
                ok=False,
                item_id=item_id,
                error=str(errors)[:400],
                status_code=resp.status_code,
            )
        return CatalogResult(ok=True, item_id=item_id, status_code=resp.status_code)

    def list_product_media(self, *, product_id: str) -> list[str]:
        url = self._url("products", product_id, "media")
        try:
            resp = self._request("GET", url)
        except httpx.HTTPError as exc:
            raise CatalogError(f"list media failed for {product_id}: {exc}") from exc
        if resp.status_code != 200:
            raise CatalogError(
                f"list media failed for {product_id}: HTTP {resp.status_code}"
            )
        body = resp.json()
        media = body.get("media") if isinstance(body, dict) else None
        out: list[str] = []
        for item in media or []:
            mid = item.get("id") if isinstance(item, dict) else item
            if mid:
                out.append(str(mid))
        return out

    def set_product_gallery_media(
        self, *, product_id: str, media_ids: list[str]
    ) -> CatalogResult:
        return self._write(
            item_id=str(product_id),
            url=self._url("products", product_id, "gallery"),
            payload={"mediaIds": [str(m) for m in media_ids]},
        )

    def set_variant_hero_media(
        self, *, product_id: str, variant_id: str, media_id: str
    ) -> CatalogResult:
        return self._write(
            item_id=str(variant_id),
            url=self._url("products", product_id, "variants", variant_id, "hero"),
            payload={"mediaId": str(media_id)},
        )


@lru_cache(maxsize=1)
def get_catalog_client() -> CatalogClient:
    settings = Settings()
    if settings.catalog_mode == "http":
        if not settings.catalog_base_url:
            raise RuntimeError(
                "GALLERYSWAP_CATALOG_BASE_URL is required for http catalog mode"
            )
        return HttpCatalogClient(
            base_url=settings.catalog_base_url,
            api_token=settings.catalog_api_token or None,
            timeout_sec=float(settings.catalog_timeout_sec),
        )
    return InMemoryCatalogClient()


def reset_catalog_client_cache() -> None:
    get_catalog_client.cache_clear()
