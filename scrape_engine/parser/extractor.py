"""Product card extraction from search result HTML."""

import logging
import re
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence
from urllib.parse import urljoin

from selectolax.parser import HTMLParser, Node

logger = logging.getLogger(__name__)

BASE_URL = "https://www.tokopedia.com"

CARD_SELECTORS = [
    'div[data-testid="master-product-card"]',
    'div[data-testid="divSRPContentProducts"] > div',
    '[class*="product-card"]',
    '[class*="ProductCard"]',
]

FIELD_SELECTORS: Dict[str, List[str]] = {
    "name": [
        'div[data-testid="spnSRPProdName"]',
        'span[data-testid="spnSRPProdName"]',
        '[data-testid*="ProdName"]',
        '[class*="product-title"]',
    ],
    "price": [
        'div[data-testid="spnSRPProdPrice"]',
        'span[data-testid="spnSRPProdPrice"]',
        '[data-testid*="ProdPrice"]',
        '[class*="product-price"]',
    ],
    "original_price": [
        'div[data-testid="spnSRPProdSlashPrice"]',
        'span[data-testid="spnSRPProdSlashPrice"]',
        '[data-testid*="SlashPrice"]',
        '[class*="slash-price"]',
    ],
    "discount": [
        'div[data-testid="spnSRPProdDiscount"]',
        'span[data-testid="spnSRPProdDiscount"]',
        '[data-testid*="Discount"]',
    ],
    "rating": [
        'div[data-testid="spnSRPProdRating"]',
        'span[data-testid="spnSRPProdRating"]',
        '[data-testid*="ProdRating"]',
    ],
    "sold": [
        'span[data-testid="spnSRPProdSold"]',
        'div[data-testid="spnSRPProdSold"]',
        '[data-testid*="Sold"]',
    ],
    "shop_name": [
        'span[data-testid="spnSRPProdShop"]',
        'div[data-testid="spnSRPProdShop"]',
        '[data-testid*="ProdShop"]',
    ],
    "shop_location": [
        'span[data-testid="spnSRPProdLocation"]',
        'div[data-testid="spnSRPProdLocation"]',
        '[data-testid*="Location"]',
    ],
    "link": [
        'a[data-testid="lnkProductCard"]',
        'a[data-testid="master-product-card-link"]',
        'a[href*="/product/"]',
        "a[href]",
    ],
    "image": [
        'img[data-testid="imgSRPProdMain"]',
        'img[data-testid="master-product-card-image"]',
        "img",
    ],
}


class Extractor(Protocol):
    """Turns page HTML into product records."""

    def extract(self, html: str) -> List[Dict[str, Any]]:
        ...


def parse_price(text: Optional[str]) -> Optional[int]:
    """
    Parse a rupiah price string.

    "Rp1.234.567" -> 1234567. For ranges the first price is used.
    """
    if not text:
        return None
    text = text.strip().lower()
    if "gratis" in text:
        return 0

    first = re.split(r"\s*-\s*", text)[0]
    match = re.search(r"(\d[\d.]*)", first.replace("rp", ""))
    if not match:
        return None
    digits = match.group(1).replace(".", "")
    return int(digits) if digits else None


def parse_count(text: Optional[str]) -> Optional[int]:
    """Parse counts like "1rb+ terjual" or "250 terjual"."""
    if not text:
        return None
    text = text.strip().lower()
    match = re.search(r"([\d.,]+)\s*(rb|jt)?", text)
    if not match:
        return None
    number = match.group(1)
    unit = match.group(2)
    if unit:
        value = float(number.replace(".", "").replace(",", "."))
        return round(value * (1000 if unit == "rb" else 1000000))
    return int(re.sub(r"[^\d]", "", number) or 0)


def parse_rating(text: Optional[str]) -> Optional[float]:
    if not text:
        return None
    match = re.search(r"(\d+(?:[.,]\d+)?)", text)
    if not match:
        return None
    rating = float(match.group(1).replace(",", "."))
    if rating < 0 or rating > 5:
        return None
    return round(rating, 1)


def parse_discount(text: Optional[str]) -> Optional[int]:
    if not text:
        return None
    match = re.search(r"(\d{1,3})\s*%", text)
    return int(match.group(1)) if match else None


class ProductCardExtractor:
    """
    Extract product records from search listing HTML using selectolax.

    Each field tries a chain of selectors; a field that fails is counted and
    left as None. A card is kept when it has a name or a price.
    """

    def __init__(
        self,
        card_selectors: Optional[Sequence[str]] = None,
        base_url: str = BASE_URL,
    ):
        self.card_selectors = list(card_selectors or CARD_SELECTORS)
        self.base_url = base_url

    def extract(self, html: str) -> List[Dict[str, Any]]:
        if not html:
            logger.warning("Empty HTML input")
            return []

        parser = HTMLParser(html)
        cards: List[Node] = []
        used_selector = None
        for selector in self.card_selectors:
            cards = parser.css(selector)
            if cards:
                used_selector = selector
                break

        if not cards:
            logger.warning("No product cards found with any selector")
            return []

        products = []
        field_errors: Counter = Counter()
        skipped = 0
        scraped_at = datetime.now(timezone.utc).isoformat()

        for card in cards:
            product = self._extract_card(card, field_errors)
            if product["name"] or product["price"] is not None:
                product["scrapedAt"] = scraped_at
                products.append(product)
            else:
                skipped += 1

        if field_errors:
            logger.debug(f"Field extraction errors: {dict(field_errors)}")
        if skipped:
            logger.warning(f"Skipped {skipped}/{len(cards)} cards without name or price")

        logger.info(f"Parsed {len(products)}/{len(cards)} product cards (selector: {used_selector})")
        return products

    def _extract_card(self, card: Node, field_errors: Counter) -> Dict[str, Any]:
        def field(name: str, parse: Callable[[Optional[str]], Any] = _clean):
            try:
                return parse(self._text(card, name))
            except (ValueError, TypeError) as e:
                field_errors[name] += 1
                logger.debug(f"Field {name} failed: {e}")
                return None

        price = field("price", parse_price)
        original_price = field("original_price", parse_price)
        discount = field("discount", parse_discount)
        if discount is None and price and original_price and original_price > price:
            discount = round((1 - price / original_price) * 100)

        return {
            "name": field("name"),
            "price": price,
            "originalPrice": original_price,
            "discount": discount,
            "rating": field("rating", parse_rating),
            "soldCount": field("sold", parse_count),
            "shopName": field("shop_name"),
            "shopLocation": field("shop_location"),
            "productUrl": self._attr(card, "link", "href", absolute=True),
            "imageUrl": self._attr(card, "image", "src"),
        }

    def _first(self, card: Node, name: str) -> Optional[Node]:
        for selector in FIELD_SELECTORS[name]:
            node = card.css_first(selector)
            if node is not None:
                return node
        return None

    def _text(self, card: Node, name: str) -> Optional[str]:
        node = self._first(card, name)
        return node.text(strip=True) if node is not None else None

    def _attr(self, card: Node, name: str, attr: str, absolute: bool = False) -> Optional[str]:
        node = self._first(card, name)
        if node is None:
            return None
        value = node.attributes.get(attr)
        if not value:
            return None
        if absolute:
            value = urljoin(self.base_url, value.split("?")[0])
        return value


def _clean(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    cleaned = " ".join(text.split())
    return cleaned or None
