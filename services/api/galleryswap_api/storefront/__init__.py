from galleryswap_api.storefront.adapter import (
    ActiveCase,
    AdapterRun,
    PageContext,
    StorefrontAdapter,
)
from galleryswap_api.storefront.detection import DetectionResult, PageState, detect_gallery
from galleryswap_api.storefront.replacement import ReplacementReport, replace_gallery

__all__ = [
    "ActiveCase",
    "AdapterRun",
    "DetectionResult",
    "PageContext",
    "PageState",
    "ReplacementReport",
    "StorefrontAdapter",
    "detect_gallery",
    "replace_gallery",
]
