from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum

from bs4 import BeautifulSoup, Tag
from soupsieve import SelectorSyntaxError

from galleryswap_api.storefront.themes import (
    ADAPTIVE,
    ADAPTIVE_PATTERNS,
    ANCESTOR_MAX_DEPTH,
    ANCESTOR_MIN_SHARE,
    COMMON_ANCESTOR,
    KNOWN_THEMES,
    MIN_IMAGE_SIDE_PX,
    PRODUCT_IMAGE_MARKERS,
    ThemeProfile,
)


class PageState(str, Enum):
    DETECTING = "DETECTING"
    FOUND = "FOUND"
    NOT_FOUND = "NOT_FOUND"
    REPLACING = "REPLACING"
    DONE = "DONE"


MARK_REPLACED = "data-ab-test-replaced"

_ITEM_CLASS_RE = re.compile(r"item|slide|cell|wrapper|container", re.IGNORECASE)


@dataclass(frozen=True)
class GallerySlot:
    img: Tag
    item: Tag


@dataclass
class GalleryMatch:
    container: Tag
    slots: list[GallerySlot]
    theme: ThemeProfile
    structured: bool = False


@dataclass
class DetectionResult:
    state: PageState
    match: GalleryMatch | None = None
    theme: ThemeProfile | None = None
    theme_score: int = 0
    trail: list[str] = field(default_factory=list)

    @property
    def image_count(self) -> int:
        return len(self.match.slots) if self.match else 0


def _select(root: Tag, selector: str) -> list[Tag]:
    try:
        return list(root.select(selector))
    except (SelectorSyntaxError, ValueError):
        return []


def _px(raw: object) -> int | None:
    m = re.match(r"\s*(\d+)", str(raw or ""))
    return int(m.group(1)) if m else None


def image_src(img: Tag) -> str:
    return str(img.get("src") or img.get("data-src") or "")


def is_product_image(img: Tag) -> bool:
    if img.get(MARK_REPLACED) == "true":
        return True
    src = image_src(img)
    if not any(marker in src for marker in PRODUCT_IMAGE_MARKERS):
        return False
    width = _px(img.get("width"))
    height = _px(img.get("height"))
    if width is not None and height is not None:
        return width > MIN_IMAGE_SIDE_PX or height > MIN_IMAGE_SIDE_PX
    return True


def detect_theme(soup: BeautifulSoup) -> tuple[ThemeProfile | None, int]:
    best: ThemeProfile | None = None
    best_score = 0
    for theme in KNOWN_THEMES:
        score = 0
        for selector in theme.selectors:
            if _select(soup, selector):
                score += 10
        for attr in theme.attributes:
            if _select(soup, f"[{attr}]"):
                score += 5
        for cls in theme.classes:
            if soup.find(class_=cls) is not None:
                score += 3
        if score > best_score:
            best, best_score = theme, score
    return best, best_score


def analyze_container(container: Tag, theme: ThemeProfile | None) -> GalleryMatch | None:
    slots: list[GallerySlot] = []
    structured = False
    if theme is not None and theme.items:
        claimed: set[int] = set()
        # Outer matches come first in document order; nested item matches
        # for the same image are dropped.
        for item in _select(container, ", ".join(theme.items)):
            img = item.find("img")
            if isinstance(img, Tag) and id(img) not in claimed and is_product_image(img):
                claimed.add(id(img))
                slots.append(GallerySlot(img=img, item=item))
        structured = bool(slots)

    if not slots:
        for img in container.find_all("img"):
            if is_product_image(img):
                parent = img.parent
                item = parent if isinstance(parent, Tag) and parent is not container else img
                slots.append(GallerySlot(img=img, item=item))

    if len(slots) < 2:
        return None
    return GalleryMatch(
        container=container,
        slots=slots,
        theme=theme or ADAPTIVE,
        structured=structured,
    )


def _find_image_item(img: Tag, container: Tag) -> Tag:
    best = img.parent if isinstance(img.parent, Tag) else img
    current = img.parent
    while isinstance(current, Tag) and current is not container:
        classes = " ".join(current.get("class") or [])
        if _ITEM_CLASS_RE.search(classes):
            best = current
        current = current.parent
    return best


def _common_ancestor_gallery(soup: BeautifulSoup) -> GalleryMatch | None:
    images = [img for img in soup.find_all("img") if is_product_image(img)]
    if len(images) < 2:
        return None
    parent = images[0].parent
    depth = 0
    while isinstance(parent, Tag) and depth < ANCESTOR_MAX_DEPTH:
        contained = [
            img for img in images if any(p is parent for p in img.parents)
        ]
        if len(contained) >= len(images) * ANCESTOR_MIN_SHARE and len(contained) >= 2:
            return GalleryMatch(
                container=parent,
                slots=[
                    GallerySlot(img=img, item=_find_image_item(img, parent))
                    for img in contained
                ],
                theme=COMMON_ANCESTOR,
            )
        parent = parent.parent
        depth += 1
    return None


def detect_gallery(soup: BeautifulSoup) -> DetectionResult:
    """Find the product gallery: theme fingerprints, then generic patterns,
    then the shallowest ancestor holding most product images."""
    result = DetectionResult(state=PageState.DETECTING)
    theme, score = detect_theme(soup)
    result.theme, result.theme_score = theme, score

    if theme is not None:
        for selector in theme.containers:
            for container in _select(soup, selector)[:1]:
                match = analyze_container(container, theme)
                if match is not None:
                    result.trail.append(f"theme:{theme.kind.value}:{selector}")
                    result.state, result.match = PageState.FOUND, match
                    return result
        result.trail.append(f"theme:{theme.kind.value}:miss")

    for pattern in ADAPTIVE_PATTERNS:
        for container in _select(soup, pattern):
            match = analyze_container(container, None)
            if match is not None:
                result.trail.append(f"adaptive:{pattern}")
                result.state, result.match = PageState.FOUND, match
                return result
    result.trail.append("adaptive:miss")

    match = _common_ancestor_gallery(soup)
    if match is not None:
        result.trail.append("common_ancestor")
        result.state, result.match = PageState.FOUND, match
        return result

    result.trail.append("common_ancestor:miss")
    result.state = PageState.NOT_FOUND
    return result
