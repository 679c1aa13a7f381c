from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ThemeKind(str, Enum):
    DAWN = "dawn"
    HORIZON = "horizon"
    DEBUT = "debut"
    BROOKLYN = "brooklyn"
    PRESTIGE = "prestige"
    IMPULSE = "impulse"
    ADAPTIVE = "adaptive"
    COMMON_ANCESTOR = "common_ancestor"


class HideMethod(str, Enum):
    DISPLAY = "display"
    # visibility:hidden plus off-screen positioning
    VISIBILITY = "visibility"
    REMOVE = "remove"
    # display + visibility with !important, aria-hidden and the hidden attribute
    FORCE = "force"


class HideTarget(str, Enum):
    ITEM = "item"
    IMAGE = "image"


@dataclass(frozen=True)
class ThemeProfile:
    kind: ThemeKind
    name: str
    # Scored fingerprints: selectors +10, attribute selectors +5, classes +3.
    selectors: tuple[str, ...] = ()
    attributes: tuple[str, ...] = ()
    classes: tuple[str, ...] = ()
    containers: tuple[str, ...] = ()
    items: tuple[str, ...] = ()
    hide_target: HideTarget = HideTarget.ITEM
    hide_method: HideMethod = HideMethod.DISPLAY
    cleanup_selectors: tuple[str, ...] = ()
    # Ancestor also hidden alongside a hidden slot (e.g. slideshow wrappers).
    hide_closest: str | None = None

    @property
    def is_known(self) -> bool:
        return self.kind not in {ThemeKind.ADAPTIVE, ThemeKind.COMMON_ANCESTOR}


DAWN = ThemeProfile(
    kind=ThemeKind.DAWN,
    name="Dawn",
    selectors=(".product__media-list", "media-gallery", "#MainProduct"),
    attributes=('data-section="main-product"',),
    classes=("product__media-item", "product__media-wrapper"),
    containers=(
        ".product__media-list",
        "ul.product__media-list",
        "media-gallery .product__media-list",
    ),
    items=(".product__media-item", "li.product__media-item", ".product__media-list > li"),
    cleanup_selectors=(".product__media-wrapper:empty",),
)

HORIZON = ThemeProfile(
    kind=ThemeKind.HORIZON,
    name="Horizon",
    selectors=("media-gallery", "slideshow-component", "slideshow-slide"),
    attributes=("data-presentation",),
    classes=("media-gallery", "slideshow-slide", "product-media-container"),
    containers=("slideshow-slides", "media-gallery", "slideshow-container"),
    items=("slideshow-slide", ".product-media-container"),
    hide_method=HideMethod.FORCE,
    hide_closest="slideshow-slide",
)

DEBUT = ThemeProfile(
    kind=ThemeKind.DEBUT,
    name="Debut",
    selectors=(".product-single__photos", "#ProductPhoto"),
    classes=("product-single__photo",),
    containers=(".product-single__photos", ".product__main-photos"),
    items=(".product-single__photo", ".product-single__photo-wrapper"),
    hide_method=HideMethod.VISIBILITY,
)

BROOKLYN = ThemeProfile(
    kind=ThemeKind.BROOKLYN,
    name="Brooklyn",
    selectors=(".product__slides",),
    classes=("product__slide",),
    containers=(".product__slides",),
    items=(".product__slide",),
)

PRESTIGE = ThemeProfile(
    kind=ThemeKind.PRESTIGE,
    name="Prestige",
    selectors=(".Product__Gallery", ".Product__Slideshow"),
    classes=("Product__SlideItem",),
    containers=(".Product__Gallery", ".Product__Slideshow"),
    items=(".Product__SlideItem",),
)

IMPULSE = ThemeProfile(
    kind=ThemeKind.IMPULSE,
    name="Impulse",
    selectors=(".product__photos",),
    classes=("product__photo",),
    containers=(".product__photos",),
    items=(".product__photo",),
)

ADAPTIVE = ThemeProfile(kind=ThemeKind.ADAPTIVE, name="adaptive")
COMMON_ANCESTOR = ThemeProfile(kind=ThemeKind.COMMON_ANCESTOR, name="common-parent")

# Priority order; ties on fingerprint score go to the earlier theme.
KNOWN_THEMES: tuple[ThemeProfile, ...] = (
    DAWN,
    HORIZON,
    DEBUT,
    BROOKLYN,
    PRESTIGE,
    IMPULSE,
)

ADAPTIVE_PATTERNS: tuple[str, ...] = (
    "media-gallery",
    "product-gallery",
    "slider-component",
    '[class*="product"][class*="media"]',
    '[class*="product"][class*="gallery"]',
    '[class*="product"][class*="image"]',
    '[class*="product"][class*="photo"]',
    '[class*="product"][class*="slide"]',
    "[data-product-images]",
    "[data-product-gallery]",
    "[data-media-gallery]",
    "[data-gallery]",
    'ul[class*="product"]',
    'div[class*="swiper"]',
    'div[class*="slider"]',
    'div[class*="carousel"]',
)

PRODUCT_IMAGE_MARKERS: tuple[str, ...] = (
    "/products/",
    "cdn.shopify.com",
    "/cdn/shop/files/",
    ".myshopify.com/cdn/",
)

# Images at or below this size (both sides) are thumbnails.
MIN_IMAGE_SIDE_PX = 50
ANCESTOR_MAX_DEPTH = 10
ANCESTOR_MIN_SHARE = 0.8
