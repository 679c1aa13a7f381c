from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable

from galleryswap_api.catalog import CatalogClient, CatalogResult
from galleryswap_api.core.config import Settings


@dataclass(frozen=True)
class HeroFailure:
    variant_id: str
    media_id: str
    error: str


@dataclass
class AssignmentReport:
    product_id: str
    media_ids: list[str]
    gallery: CatalogResult | None = None
    gallery_attempts: int = 0
    succeeded: list[str] = field(default_factory=list)
    failed: list[HeroFailure] = field(default_factory=list)

    @property
    def gallery_ok(self) -> bool:
        return bool(self.gallery is not None and self.gallery.ok)

    def to_dict(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "gallery_ok": self.gallery_ok,
            "gallery_attempts": int(self.gallery_attempts),
            "gallery_error": self.gallery.error if self.gallery else None,
            "succeeded": list(self.succeeded),
            "failed": [
                {"variant_id": f.variant_id, "media_id": f.media_id, "error": f.error}
                for f in self.failed
            ],
        }


class MediaAssignmentError(RuntimeError):
    def __init__(self, reason: str, *, report: AssignmentReport) -> None:
        super().__init__(reason)
        self.reason = reason
        self.report = report


def assign_media(
    catalog: CatalogClient,
    *,
    product_id: str,
    media_ids: list[str] | tuple[str, ...],
    heroes: dict[str, str] | None = None,
    max_attempts: int | None = None,
    backoff_sec: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> AssignmentReport:
    """Point the product's gallery (and variant heroes) at already-uploaded media.

    Never deletes: media outside ``media_ids`` stays uploaded, just unlisted.
    Raises ``MediaAssignmentError`` when the gallery cannot be set; hero
    failures are collected in the report instead.
    """
    settings = Settings()
    attempts_max = max(1, int(max_attempts or settings.catalog_max_attempts))
    backoff = float(
        settings.catalog_backoff_sec if backoff_sec is None else backoff_sec
    )
    targets = [str(m) for m in media_ids if str(m or "").strip()]
    hero_map = {str(k): str(v) for k, v in (heroes or {}).items() if v}
    report = AssignmentReport(product_id=str(product_id), media_ids=targets)

    if not targets:
        raise MediaAssignmentError("empty_target_media", report=report)

    try:
        existing = set(catalog.list_product_media(product_id=str(product_id)))
    except Exception as exc:  # noqa: BLE001
        raise MediaAssignmentError(
            f"catalog_list_failed: {str(exc)[:300]}", report=report
        ) from exc
    missing = [m for m in [*targets, *hero_map.values()] if m not in existing]
    if missing:
        raise MediaAssignmentError(
            f"missing_media: {','.join(sorted(set(missing)))}", report=report
        )

    for attempt in range(1, attempts_max + 1):
        report.gallery_attempts = attempt
        try:
            result = catalog.set_product_gallery_media(
                product_id=str(product_id), media_ids=list(targets)
            )
        except Exception as exc:  # noqa: BLE001
            result = CatalogResult(
                ok=False, item_id=str(product_id), error=str(exc)[:300], retryable=True
            )
        report.gallery = result
        if result.ok or not result.retryable:
            break
        if attempt < attempts_max and backoff > 0:
            sleep(backoff * attempt)

    if not report.gallery_ok:
        err = report.gallery.error if report.gallery else None
        raise MediaAssignmentError(f"gallery_failed: {err}", report=report)

    for variant_id, media_id in sorted(hero_map.items()):
        try:
            res = catalog.set_variant_hero_media(
                product_id=str(product_id), variant_id=variant_id, media_id=media_id
            )
        except Exception as exc:  # noqa: BLE001
            res = CatalogResult(ok=False, item_id=variant_id, error=str(exc)[:300])
        if res.ok:
            report.succeeded.append(variant_id)
        else:
            report.failed.append(
                HeroFailure(
                    variant_id=variant_id,
                    media_id=media_id,
                    error=str(res.error or "unknown_error"),
                )
            )
    return report
