from __future__ import annotations

from dataclasses import dataclass

from bs4 import Tag

from galleryswap_api.storefront.detection import (
    MARK_REPLACED,
    GalleryMatch,
    GallerySlot,
)
from galleryswap_api.storefront.themes import HideMethod, HideTarget, ThemeProfile


MARK_HIDDEN = "data-ab-test-hidden"
MARK_HIDDEN_PARENT = "data-ab-test-hidden-parent"
MARK_INDEX = "data-ab-test-index"
MARK_VISIBLE = "data-ab-test-visible"
MARK_ORIGINAL_SRC = "data-original-src"
MARK_ORIGINAL_SRCSET = "data-original-srcset"
MARK_ORIGINAL_DATA_SRC = "data-original-data-src"

_FORCE_HIDDEN_STYLE = "display: none !important; visibility: hidden !important;"


@dataclass
class ReplacementReport:
    replaced: int = 0
    hidden: int = 0
    mutations: int = 0


def parse_style(raw: str | None) -> dict[str, str]:
    out: dict[str, str] = {}
    for decl in str(raw or "").split(";"):
        if ":" not in decl:
            continue
        key, value = decl.split(":", 1)
        key = key.strip().lower()
        if key:
            out[key] = value.strip()
    return out


def format_style(style: dict[str, str]) -> str:
    return " ".join(f"{k}: {v};" for k, v in style.items())


def is_hidden(tag: Tag) -> bool:
    if tag.get(MARK_HIDDEN) == "true" or tag.has_attr("hidden"):
        return True
    return parse_style(tag.get("style")).get("display", "").startswith("none")


class _Mutator:
    def __init__(self, report: ReplacementReport) -> None:
        self.report = report

    def set_attr(self, tag: Tag, name: str, value: str) -> None:
        if tag.get(name) != value:
            tag[name] = value
            self.report.mutations += 1

    def drop_attr(self, tag: Tag, name: str) -> None:
        if tag.has_attr(name):
            del tag[name]
            self.report.mutations += 1

    def update_style(
        self, tag: Tag, *, set_: dict[str, str] | None = None, remove: tuple[str, ...] = ()
    ) -> None:
        style = parse_style(tag.get("style"))
        changed = dict(style)
        for key in remove:
            changed.pop(key, None)
        changed.update(set_ or {})
        if changed == style:
            return
        if changed:
            tag["style"] = format_style(changed)
        else:
            del tag["style"]
        self.report.mutations += 1


def _replace_slot(m: _Mutator, slot: GallerySlot, url: str, index: int) -> None:
    img = slot.img
    if not img.has_attr(MARK_ORIGINAL_SRC):
        m.set_attr(img, MARK_ORIGINAL_SRC, str(img.get("src") or ""))
        if img.get("srcset"):
            m.set_attr(img, MARK_ORIGINAL_SRCSET, str(img.get("srcset")))
        if img.get("data-src"):
            m.set_attr(img, MARK_ORIGINAL_DATA_SRC, str(img.get("data-src")))

    m.set_attr(img, "src", url)
    m.drop_attr(img, "srcset")
    m.drop_attr(img, "sizes")
    if img.has_attr("data-src"):
        m.set_attr(img, "data-src", url)
    if img.has_attr("data-srcset"):
        m.drop_attr(img, "data-srcset")
    # <picture><source srcset> would win over img.src.
    picture = img.parent
    if isinstance(picture, Tag) and picture.name == "picture":
        for source in picture.find_all("source"):
            m.drop_attr(source, "srcset")
    if str(img.get("loading") or "").lower() == "lazy":
        m.set_attr(img, "loading", "eager")

    m.set_attr(img, MARK_REPLACED, "true")
    m.set_attr(img, MARK_INDEX, str(index))
    m.update_style(img, remove=("display", "visibility", "opacity"))

    item = slot.item
    if item is not None and item is not img:
        m.update_style(item, remove=("display", "visibility"))
        m.set_attr(item, MARK_VISIBLE, "true")


def _hide(m: _Mutator, target: Tag, method: HideMethod) -> None:
    if method == HideMethod.FORCE:
        m.set_attr(target, "style", _FORCE_HIDDEN_STYLE)
        m.set_attr(target, "aria-hidden", "true")
        m.set_attr(target, "hidden", "")
    elif method == HideMethod.VISIBILITY:
        m.update_style(
            target,
            set_={"visibility": "hidden", "position": "absolute", "left": "-9999px"},
        )
    else:
        m.update_style(target, set_={"display": "none"})


def _hide_slot(
    m: _Mutator, slot: GallerySlot, index: int, theme: ThemeProfile
) -> Tag | None:
    use_image = theme.hide_target == HideTarget.IMAGE or slot.item is None
    target = slot.img if use_image else slot.item
    if target.get(MARK_HIDDEN) == "true" and is_hidden(target):
        return target

    if theme.hide_method == HideMethod.REMOVE:
        target.extract()
        m.report.mutations += 1
        return None

    _hide(m, target, theme.hide_method)
    if theme.hide_closest:
        outer = target.find_parent(theme.hide_closest)
        if outer is not None:
            _hide(m, outer, theme.hide_method)
            m.set_attr(outer, MARK_HIDDEN, "true")
    m.set_attr(target, MARK_HIDDEN, "true")
    m.set_attr(target, MARK_INDEX, str(index))
    return target


def _hide_empty_parents(
    m: _Mutator, hidden: list[Tag], container: Tag, theme: ThemeProfile
) -> None:
    seen: set[int] = set()
    for tag in hidden:
        parent = tag.parent
        if not isinstance(parent, Tag) or parent is container or id(parent) in seen:
            continue
        seen.add(id(parent))
        children = [c for c in parent.children if isinstance(c, Tag)]
        if children and all(is_hidden(c) for c in children):
            m.update_style(parent, set_={"display": "none"})
            m.set_attr(parent, MARK_HIDDEN_PARENT, "true")

    root = container
    while isinstance(root.parent, Tag):
        root = root.parent
    for selector in theme.cleanup_selectors:
        for el in root.select(selector):
            m.update_style(el, set_={"display": "none"})


def replace_gallery(match: GalleryMatch, image_urls: list[str]) -> ReplacementReport:
    """Swap the first len(image_urls) slots in place and hide the rest.

    Every write is compare-and-set, so re-running with the same urls leaves
    the document untouched (``mutations == 0``).
    """
    report = ReplacementReport()
    m = _Mutator(report)
    urls = [str(u) for u in image_urls if str(u or "").strip()]
    hidden: list[Tag] = []
    for index, slot in enumerate(list(match.slots)):
        if index < len(urls):
            _replace_slot(m, slot, urls[index], index)
            report.replaced += 1
        else:
            target = _hide_slot(m, slot, index, match.theme)
            report.hidden += 1
            if target is not None:
                hidden.append(target)
    _hide_empty_parents(m, hidden, match.container, match.theme)
    return report
