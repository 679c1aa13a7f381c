from __future__ import annotations

import re
import secrets
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable
from urllib.parse import parse_qs, quote, urlparse

import httpx
import orjson
from bs4 import BeautifulSoup, Tag

from galleryswap_api.core.config import Settings
from galleryswap_api.eventlog import log
from galleryswap_api.storefront.detection import (
    DetectionResult,
    PageState,
    detect_gallery,
)
from galleryswap_api.storefront.replacement import ReplacementReport, replace_gallery


SESSION_STORAGE_KEY = "ab_test_session"
SESSION_METADATA_KEY = "ab_test_session_meta"
MARK_TRACKED = "data-ab-tracked"

ADD_TO_CART_SELECTORS: tuple[str, ...] = (
    'form[action*="/cart/add"]',
    'button[name="add"]',
    "[data-add-to-cart]",
    ".product-form__submit",
    ".add-to-cart",
    "#AddToCart",
)

_PRODUCT_PATH_RE = re.compile(r"/products/([^/?#]+)")
_ST_RID_RE = re.compile(r'__st\s*=\s*\{[^}]*"rid"\s*:\s*(\d+)')
PRODUCT_GID_PREFIX = "gid://shopify/Product/"


@dataclass
class PageContext:
    """Everything one page view may read or persist.

    ``storage`` stands in for the browser's localStorage and is the only
    state that outlives the page.
    """

    page_url: str
    storage: dict[str, str] = field(default_factory=dict)
    debug: bool | None = None

    def __post_init__(self) -> None:
        if self.debug is None:
            query = parse_qs(urlparse(self.page_url).query)
            self.debug = (query.get("ab_debug") or [""])[0].lower() == "true"

    @property
    def query(self) -> dict[str, list[str]]:
        return parse_qs(urlparse(self.page_url).query)


@dataclass(frozen=True)
class ActiveCase:
    observed_case: str | None
    gallery_media_urls: list[str] = field(default_factory=list)
    hero_media_url: str | None = None
    experiment_id: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ActiveCase:
        case = payload.get("observedCase")
        urls = payload.get("galleryMediaUrls") or []
        return cls(
            observed_case=str(case) if case in {"BASE", "TEST"} else None,
            gallery_media_urls=[str(u) for u in urls if u],
            hero_media_url=(str(payload["heroMediaUrl"]) if payload.get("heroMediaUrl") else None),
            experiment_id=(str(payload["experimentId"]) if payload.get("experimentId") else None),
        )

    def target_urls(self) -> list[str]:
        urls = list(self.gallery_media_urls)
        if self.hero_media_url:
            urls = [self.hero_media_url, *[u for u in urls if u != self.hero_media_url]]
        return urls


@dataclass
class AdapterRun:
    state: PageState
    product_id: str | None = None
    observed_case: str | None = None
    detection: DetectionResult | None = None
    replacement: ReplacementReport | None = None
    impression_sent: bool = False


class StorefrontAdapter:
    """One instance per page lifecycle.

    Never raises into the caller: network, detection and replacement
    failures leave the page as it was.
    """

    def __init__(
        self,
        context: PageContext,
        *,
        api_base_url: str = "",
        client: httpx.Client | None = None,
        settings: Settings | None = None,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.context = context
        self.settings = settings or Settings()
        self.api_base_url = str(api_base_url or "").rstrip("/")
        self.client = client
        self.sleep = sleep
        self.now = now or (lambda: datetime.now(UTC))

        self.state = PageState.DETECTING
        self.product_id: str | None = None
        self.active: ActiveCase | None = None
        self.detection: DetectionResult | None = None
        self._in_flight = False
        self._processed: set[str] = set()
        self._impression_sent = False

    def _debug(self, message: str, **fields: Any) -> None:
        if self.context.debug:
            log("storefront", message, level="debug", **fields)

    def session_id(self) -> str:
        now_ms = int(self.now().timestamp() * 1000)
        ttl_ms = int(self.settings.storefront_session_ttl_hours) * 60 * 60 * 1000
        try:
            meta = orjson.loads(self.context.storage.get(SESSION_METADATA_KEY) or "{}")
        except orjson.JSONDecodeError:
            meta = {}
        if isinstance(meta, dict) and meta.get("id") and meta.get("createdAt"):
            try:
                if now_ms - int(meta["createdAt"]) < ttl_ms:
                    return str(meta["id"])
            except (TypeError, ValueError):
                pass
        sid = f"session_{secrets.token_hex(8)}{now_ms:x}"
        self.context.storage[SESSION_STORAGE_KEY] = sid
        self.context.storage[SESSION_METADATA_KEY] = orjson.dumps(
            {"id": sid, "createdAt": now_ms}
        ).decode("utf-8")
        self._debug("new session", session_id=sid)
        return sid

    def detect_product_id(self, soup: BeautifulSoup) -> str | None:
        """Product gid from the page analytics or ``og:product:id``; a bare
        ``handle:<handle>`` from the URL when the page exposes neither."""
        for script in soup.find_all("script"):
            m = _ST_RID_RE.search(script.get_text() or "")
            if m:
                return f"{PRODUCT_GID_PREFIX}{m.group(1)}"
        meta = soup.find("meta", attrs={"property": "og:product:id"})
        if isinstance(meta, Tag) and str(meta.get("content") or "").strip():
            return f"{PRODUCT_GID_PREFIX}{str(meta['content']).strip()}"
        m = _PRODUCT_PATH_RE.search(urlparse(self.context.page_url).path)
        if m:
            return f"handle:{m.group(1)}"
        return None

    def variant_id(self) -> str | None:
        value = (self.context.query.get("variant") or [""])[0].strip()
        return value or None

    def has_product_gid(self) -> bool:
        # Experiments are keyed by gid; a handle can never be attributed.
        return str(self.product_id or "").startswith(PRODUCT_GID_PREFIX)

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        timeout = float(self.settings.storefront_timeout_sec)
        if self.client is not None:
            return self.client.request(method, url, timeout=timeout, **kwargs)
        return httpx.request(method, url, timeout=timeout, **kwargs)

    def fetch_active_case(self, product_id: str) -> ActiveCase | None:
        url = (
            f"{self.api_base_url}{self.settings.storefront_api_base.rstrip('/')}"
            f"/active-case/{quote(product_id, safe='')}"
        )
        params = {"variant_id": self.variant_id()} if self.variant_id() else None
        attempts = max(1, int(self.settings.storefront_max_attempts))
        for attempt in range(1, attempts + 1):
            try:
                resp = self._request(
                    "GET", url, params=params, headers={"Accept": "application/json"}
                )
                if resp.status_code == 200:
                    return ActiveCase.from_payload(resp.json())
                self._debug("active case http error", status=resp.status_code)
            except (httpx.HTTPError, ValueError) as exc:
                self._debug("active case fetch failed", attempt=attempt, error=str(exc))
            if attempt < attempts:
                self.sleep(float(self.settings.storefront_backoff_sec))
        return None

    def send_event(self, event_type: str, **meta: Any) -> bool:
        if not self.has_product_gid():
            return False
        body: dict[str, Any] = {
            "sessionId": self.session_id(),
            "eventType": event_type,
            "productId": self.product_id,
            "variantId": self.variant_id(),
            "observedCase": self.active.observed_case if self.active else None,
            "meta": {"page_url": self.context.page_url, **meta},
        }
        url = f"{self.api_base_url}{self.settings.storefront_events_path}"
        try:
            resp = self._request("POST", url, json=body)
        except httpx.HTTPError as exc:
            self._debug("event post failed", event_type=event_type, error=str(exc))
            return False
        if not (200 <= resp.status_code < 300):
            self._debug("event rejected", event_type=event_type, status=resp.status_code)
            return False
        return True

    def replace_images(
        self, soup: BeautifulSoup, image_urls: list[str]
    ) -> ReplacementReport | None:
        if self._in_flight:
            self._debug("replacement already in flight")
            return None
        key = "|".join(image_urls)
        if key in self._processed:
            return ReplacementReport()
        self._in_flight = True
        self._processed.add(key)
        try:
            self.state = PageState.DETECTING
            self.detection = detect_gallery(soup)
            if self.detection.match is None:
                self.state = PageState.NOT_FOUND
                self._debug("no gallery found", trail=",".join(self.detection.trail))
                return None
            self.state = PageState.REPLACING
            report = replace_gallery(self.detection.match, image_urls)
            self.state = PageState.DONE
            self._debug(
                "replacement complete",
                theme=self.detection.match.theme.name,
                replaced=report.replaced,
                hidden=report.hidden,
            )
            return report
        finally:
            self._in_flight = False

    def wire_add_to_cart(self, soup: BeautifulSoup) -> int:
        wired = 0
        for el in soup.select(", ".join(ADD_TO_CART_SELECTORS)):
            if el.get(MARK_TRACKED) == "true":
                continue
            el[MARK_TRACKED] = "true"
            wired += 1
        return wired

    def handle_dom_event(self, element: Tag) -> bool:
        """Called for submit/click events; emits ADD_TO_CART when the element
        (or an ancestor) was wired."""
        node: Tag | None = element
        while isinstance(node, Tag):
            if node.get(MARK_TRACKED) == "true":
                source = "form" if node.name == "form" else "button"
                return self.send_event("ADD_TO_CART", source=source)
            node = node.parent
        return False

    def _emit_impression(self, run: AdapterRun) -> None:
        if self._impression_sent or not self.has_product_gid():
            return
        self._impression_sent = True
        run.impression_sent = self.send_event("IMPRESSION", source="page")

    def run(self, soup: BeautifulSoup) -> AdapterRun:
        run = AdapterRun(state=PageState.DETECTING)
        try:
            if "/products/" not in urlparse(self.context.page_url).path:
                self.state = run.state = PageState.NOT_FOUND
                return run
            self.product_id = run.product_id = self.detect_product_id(soup)
            if not self.has_product_gid():
                self._debug("no product gid on page", product_id=self.product_id)
                self.state = run.state = PageState.NOT_FOUND
                return run

            self.active = self.fetch_active_case(self.product_id)
            urls = self.active.target_urls() if self.active else []
            if self.active is None or self.active.observed_case is None or not urls:
                self.state = run.state = PageState.NOT_FOUND
                self._emit_impression(run)
                return run

            run.observed_case = self.active.observed_case
            run.replacement = self.replace_images(soup, urls)
            run.detection = self.detection
            run.state = self.state
            self.wire_add_to_cart(soup)
            self._emit_impression(run)
        except Exception as exc:  # noqa: BLE001
            self._debug("adapter failed", error=str(exc)[:300])
            run.state = self.state
        return run

    def on_variant_change(self, soup: BeautifulSoup, page_url: str) -> AdapterRun:
        """The shopper picked another variant and the theme rewrote the URL.

        Heroes are per variant, so the active case is fetched again and the
        gallery re-swapped even for image sets already applied earlier in
        this page view. No second IMPRESSION is sent.
        """
        self.context.page_url = page_url
        self._processed.clear()
        self._debug("variant changed", variant_id=self.variant_id())
        return self.run(soup)
