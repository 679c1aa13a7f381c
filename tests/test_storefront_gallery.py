from __future__ import annotations

from bs4 import BeautifulSoup

CDN = "https://cdn.shopify.com/s/files/1/0001/products"


def _dawn_page(count: int = 7) -> BeautifulSoup:
    items = "".join(
        f'<li class="product__media-item" id="slot{i}">'
        f'<div class="product__media-wrapper">'
        f'<img src="{CDN}/orig{i}.jpg" srcset="{CDN}/orig{i}_2x.jpg 2x" '
        f'width="800" height="800" loading="lazy"></div></li>'
        for i in range(count)
    )
    html = (
        '<html><body><div id="MainProduct" data-section="main-product">'
        '<media-gallery><ul class="product__media-list">'
        f"{items}</ul></media-gallery></div></body></html>"
    )
    return BeautifulSoup(html, "html.parser")


def _horizon_page() -> BeautifulSoup:
    slides = "".join(
        f'<slideshow-slide><div class="product-media-container">'
        f'<img src="{CDN}/h{i}.jpg"></div></slideshow-slide>'
        for i in range(3)
    )
    html = (
        "<html><body><media-gallery><slideshow-component><slideshow-slides>"
        f"{slides}</slideshow-slides></slideshow-component></media-gallery></body></html>"
    )
    return BeautifulSoup(html, "html.parser")


def test_dawn_theme_is_detected_structurally() -> None:
    from galleryswap_api.storefront.detection import PageState, detect_gallery
    from galleryswap_api.storefront.themes import ThemeKind

    result = detect_gallery(_dawn_page())
    assert result.state == PageState.FOUND
    assert result.theme is not None and result.theme.kind == ThemeKind.DAWN
    assert result.match is not None and result.match.structured is True
    assert result.image_count == 7
    assert [s.item.get("id") for s in result.match.slots] == [f"slot{i}" for i in range(7)]


def test_adaptive_patterns_find_unknown_theme_gallery() -> None:
    from galleryswap_api.storefront.detection import PageState, detect_gallery
    from galleryswap_api.storefront.themes import ThemeKind

    imgs = "".join(f'<div class="cell"><img src="{CDN}/x{i}.jpg"></div>' for i in range(5))
    soup = BeautifulSoup(
        f'<html><body><header><img src="/logo.png"></header>'
        f'<div class="product-gallery-list">{imgs}</div></body></html>',
        "html.parser",
    )
    result = detect_gallery(soup)
    assert result.state == PageState.FOUND
    assert result.theme is None
    assert result.match.theme.kind == ThemeKind.ADAPTIVE
    assert result.image_count == 5
    assert any(step.startswith("adaptive:") for step in result.trail)


def test_common_ancestor_fallback() -> None:
    from galleryswap_api.storefront.detection import PageState, detect_gallery
    from galleryswap_api.storefront.themes import ThemeKind

    soup = BeautifulSoup(
        "<html><body><section id='shelf'>"
        + "".join(f"<span><img src='{CDN}/c{i}.jpg'></span>" for i in range(3))
        + "</section><aside><img src='/icon.svg'></aside></body></html>",
        "html.parser",
    )
    result = detect_gallery(soup)
    assert result.state == PageState.FOUND
    assert result.match.theme.kind == ThemeKind.COMMON_ANCESTOR
    assert result.match.container.get("id") == "shelf"
    assert [s.item.name for s in result.match.slots] == ["span", "span", "span"]


def test_thumbnails_and_single_images_are_not_galleries() -> None:
    from galleryswap_api.storefront.detection import PageState, detect_gallery, is_product_image

    soup = BeautifulSoup(
        "<html><body>"
        f"<img id='main' src='{CDN}/only.jpg'>"
        f"<img id='thumb' src='{CDN}/t.jpg' width='40' height='40'>"
        "</body></html>",
        "html.parser",
    )
    assert is_product_image(soup.find(id="main")) is True
    assert is_product_image(soup.find(id="thumb")) is False
    result = detect_gallery(soup)
    assert result.state == PageState.NOT_FOUND
    assert result.match is None
    assert result.trail[-1] == "common_ancestor:miss"


def test_replacement_swaps_prefix_and_hides_rest() -> None:
    from galleryswap_api.storefront.detection import MARK_REPLACED, detect_gallery
    from galleryswap_api.storefront.replacement import (
        MARK_HIDDEN,
        MARK_ORIGINAL_SRC,
        replace_gallery,
        parse_style,
    )

    soup = _dawn_page(7)
    urls = [f"{CDN}/new{i}.jpg" for i in range(3)]
    report = replace_gallery(detect_gallery(soup).match, urls)
    assert (report.replaced, report.hidden) == (3, 4)
    assert report.mutations > 0

    items = soup.select("li.product__media-item")
    assert len(items) == 7
    for i, li in enumerate(items[:3]):
        img = li.find("img")
        assert img["src"] == urls[i]
        assert img.get(MARK_REPLACED) == "true"
        assert img.get(MARK_ORIGINAL_SRC) == f"{CDN}/orig{i}.jpg"
        assert not img.has_attr("srcset")
        assert img["loading"] == "eager"
    for li in items[3:]:
        assert parse_style(li.get("style")).get("display") == "none"
        assert li.get(MARK_HIDDEN) == "true"


def test_replacement_is_idempotent() -> None:
    from galleryswap_api.storefront.detection import detect_gallery
    from galleryswap_api.storefront.replacement import replace_gallery

    soup = _dawn_page(7)
    urls = [f"{CDN}/new{i}.jpg" for i in range(3)]
    replace_gallery(detect_gallery(soup).match, urls)
    before = str(soup)

    again = replace_gallery(detect_gallery(soup).match, urls)
    assert again.mutations == 0
    assert str(soup) == before


def test_horizon_uses_forced_hiding() -> None:
    from galleryswap_api.storefront.detection import detect_gallery
    from galleryswap_api.storefront.replacement import replace_gallery
    from galleryswap_api.storefront.themes import ThemeKind

    soup = _horizon_page()
    result = detect_gallery(soup)
    assert result.match.theme.kind == ThemeKind.HORIZON
    assert result.image_count == 3

    report = replace_gallery(result.match, [f"{CDN}/n0.jpg"])
    assert (report.replaced, report.hidden) == (1, 2)
    slides = soup.find_all("slideshow-slide")
    assert "hidden" not in slides[0].attrs
    for slide in slides[1:]:
        assert "!important" in slide["style"]
        assert slide["aria-hidden"] == "true"
        assert slide.has_attr("hidden")

    assert replace_gallery(detect_gallery(soup).match, [f"{CDN}/n0.jpg"]).mutations == 0


def test_empty_parent_is_hidden_with_its_children() -> None:
    from galleryswap_api.storefront.detection import detect_gallery
    from galleryswap_api.storefront.replacement import MARK_HIDDEN_PARENT, replace_gallery

    soup = BeautifulSoup(
        "<html><body><div class='product-gallery-main'>"
        f"<div id='row1'><img src='{CDN}/a.jpg'><img src='{CDN}/b.jpg'></div>"
        f"<div id='row2'><p><img src='{CDN}/c.jpg'></p><p><img src='{CDN}/d.jpg'></p></div>"
        "</div></body></html>",
        "html.parser",
    )
    match = detect_gallery(soup).match
    assert match is not None and len(match.slots) == 4

    replace_gallery(match, [f"{CDN}/n1.jpg", f"{CDN}/n2.jpg"])
    row2 = soup.find(id="row2")
    assert row2.get(MARK_HIDDEN_PARENT) == "true"
    assert "display: none" in row2["style"]
    assert soup.find(id="row1").get(MARK_HIDDEN_PARENT) is None
