"""Tests for product card extraction."""

import pytest

from scrape_engine.parser.extractor import (
    ProductCardExtractor,
    parse_count,
    parse_discount,
    parse_price,
    parse_rating,
)

CARD = """
<div data-testid="master-product-card">
  <a data-testid="lnkProductCard" href="/shop-a/iphone-15-128gb?extParam=1">
    <img data-testid="imgSRPProdMain" src="https://images.test/a.jpg">
    <div data-testid="spnSRPProdName">  iPhone 15   128GB </div>
    <div data-testid="spnSRPProdPrice">Rp12.999.000</div>
    <div data-testid="spnSRPProdSlashPrice">Rp15.999.000</div>
    <span data-testid="spnSRPProdRating">4,9</span>
    <span data-testid="spnSRPProdSold">1rb+ terjual</span>
    <span data-testid="spnSRPProdShop">Shop A</span>
    <span data-testid="spnSRPProdLocation">Jakarta Pusat</span>
  </a>
</div>
"""

EMPTY_CARD = '<div data-testid="master-product-card"><span>ad</span></div>'


@pytest.mark.parametrize(
    "text,expected",
    [
        ("Rp1.234.567", 1234567),
        ("Rp50.000 - Rp75.000", 50000),
        ("Gratis", 0),
        ("", None),
        ("n/a", None),
    ],
)
def test_parse_price(text, expected):
    assert parse_price(text) == expected


@pytest.mark.parametrize(
    "text,expected",
    [
        ("1rb+ terjual", 1000),
        ("2,5rb terjual", 2500),
        ("1jt+ terjual", 1000000),
        ("250 terjual", 250),
        (None, None),
    ],
)
def test_parse_count(text, expected):
    assert parse_count(text) == expected


def test_parse_rating_and_discount():
    assert parse_rating("4,9") == 4.9
    assert parse_rating("9.5") is None
    assert parse_discount("25%") == 25
    assert parse_discount("hemat") is None


def test_extracts_card_fields():
    products = ProductCardExtractor(base_url="https://shop.test").extract(f"<html><body>{CARD}</body></html>")

    assert len(products) == 1
    product = products[0]
    assert product["name"] == "iPhone 15 128GB"
    assert product["price"] == 12999000
    assert product["originalPrice"] == 15999000
    assert product["discount"] == 19
    assert product["rating"] == 4.9
    assert product["soldCount"] == 1000
    assert product["shopName"] == "Shop A"
    assert product["shopLocation"] == "Jakarta Pusat"
    assert product["productUrl"] == "https://shop.test/shop-a/iphone-15-128gb"
    assert product["imageUrl"] == "https://images.test/a.jpg"
    assert product["scrapedAt"]


def test_cards_without_name_or_price_are_skipped():
    html = f"<html><body>{CARD}{EMPTY_CARD}</body></html>"
    assert len(ProductCardExtractor().extract(html)) == 1


def test_fallback_card_selector():
    html = '<div class="grid-product-card"><div data-testid="spnSRPProdName">Mouse</div></div>'
    products = ProductCardExtractor().extract(html)
    assert [p["name"] for p in products] == ["Mouse"]
    assert products[0]["price"] is None


def test_no_cards():
    assert ProductCardExtractor().extract("<html><body><p>nothing</p></body></html>") == []
    assert ProductCardExtractor().extract("") == []
