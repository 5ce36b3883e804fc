"""
Catalog lookups: channel ids per platform and the canonical product-name
fallback used when no product alias matches.
"""

import logging
import re
from datetime import date
from typing import Dict, Iterable, Optional

from sqlalchemy.orm import Session

from ..config import settings
from ..models.catalog import Channel, Product
from ..utils.ttl_cache import TTLCache
from .parsers.text_utils import decode_html_entities, normalize_whitespace

logger = logging.getLogger(__name__)

PUB_CRAWL_PRODUCT = "Krawl Through Krakow Pub Crawl"
NYE_PRODUCT = "NYE Pub Crawl"

# Static per-business name table, checked in order
PRODUCT_CANONICAL_PATTERNS = [
    (PUB_CRAWL_PRODUCT, [
        re.compile(r"krawl through krakow", re.IGNORECASE),
        re.compile(r"pub crawl krawl through", re.IGNORECASE),
        re.compile(r"krakow:\s*pub crawl", re.IGNORECASE),
        re.compile(r"pub crawl\s+1h\s+open\s+bar", re.IGNORECASE),
    ]),
    (NYE_PRODUCT, [
        re.compile(r"new\s*year'?s?\s*eve", re.IGNORECASE),
        re.compile(r"\bnye\b", re.IGNORECASE),
    ]),
    ("Food Tour", [re.compile(r"food tour", re.IGNORECASE)]),
    ("Bottomless Brunch", [
        re.compile(r"bottomless brunch", re.IGNORECASE),
        re.compile(r"brunch\s+with\s+3-course", re.IGNORECASE),
    ]),
    ("Go-Karting", [re.compile(r"go[-\s]?kart", re.IGNORECASE), re.compile(r"karting", re.IGNORECASE)]),
    ("Private Pub Crawl", [
        re.compile(r"private\s+pub\s+crawl", re.IGNORECASE),
        re.compile(r"private\s+krawl", re.IGNORECASE),
    ]),
    ("Krawl Through Kazimierz", [
        re.compile(r"krawl\s+through\s+kazimierz", re.IGNORECASE),
        re.compile(r"kazimierz\s*-\s*1\s*hour\s*open\s*bar", re.IGNORECASE),
        re.compile(r"kazimierz\s+.*pro\s+guide", re.IGNORECASE),
    ]),
]

_NOISE_PATTERNS = [
    re.compile(r"&raquo;?", re.IGNORECASE),
    re.compile(r"#+"),
    re.compile(r"(Cancelled|Canceled|Rebooked)\s*:?", re.IGNORECASE),
    re.compile(r"New\s+order", re.IGNORECASE),
    re.compile(r"Booking\s+note:?", re.IGNORECASE),
    re.compile(r"View on FareHarbor", re.IGNORECASE),
]


def sanitize_product_source(value: str) -> str:
    value = decode_html_entities(value)
    for pattern in _NOISE_PATTERNS:
        value = pattern.sub(" ", value)
    return normalize_whitespace(value)


def canonical_product_name(label: Optional[str]) -> Optional[str]:
    """Map a raw label to its canonical product name, if the table knows it."""
    if not label:
        return None
    sanitized = sanitize_product_source(label)
    if not sanitized:
        return None
    for canonical, patterns in PRODUCT_CANONICAL_PATTERNS:
        if any(p.search(sanitized) for p in patterns):
            return canonical
    return None


def apply_new_years_eve_rule(name: Optional[str], experience_date: Optional[date]) -> Optional[str]:
    """The regular pub crawl on 31 December is sold as the NYE variant."""
    if name == PUB_CRAWL_PRODUCT and experience_date is not None \
            and experience_date.month == 12 and experience_date.day == 31:
        return NYE_PRODUCT
    return name


default_catalog_cache = TTLCache(ttl_seconds=settings.alias_cache_ttl_seconds)


class CatalogService:
    """Channel and product-name lookups backed by a TTL cache."""

    def __init__(
        self,
        db: Session,
        cache: Optional[TTLCache] = None,
        platform_channels: Optional[Dict[str, str]] = None,
    ):
        self.db = db
        self.cache = cache if cache is not None else default_catalog_cache
        self.platform_channels = (
            platform_channels if platform_channels is not None else settings.platform_channel_map
        )

    def _load_channels(self) -> Dict[str, int]:
        rows = self.db.query(Channel.id, Channel.name).all()
        return {name.strip().lower(): channel_id for channel_id, name in rows if name}

    def _load_products(self) -> Dict[str, int]:
        rows = self.db.query(Product.id, Product.name).filter(Product.active.is_(True)).all()
        return {name.strip().lower(): product_id for product_id, name in rows if name}

    def channel_id_for_platform(self, platform: str) -> Optional[int]:
        channel_name = self.platform_channels.get((platform or "").lower())
        if not channel_name:
            return None
        channels = self.cache.get_or_load("channels", self._load_channels)
        channel_id = channels.get(channel_name.lower())
        if channel_id is None:
            logger.debug(f"No channel row named {channel_name!r} for platform {platform}")
        return channel_id

    def product_id_by_name(self, name: Optional[str]) -> Optional[int]:
        if not name:
            return None
        products = self.cache.get_or_load("products", self._load_products)
        return products.get(name.strip().lower())

    def product_name(self, product_id: int) -> Optional[str]:
        return self.db.query(Product.name).filter(Product.id == product_id).scalar()

    def product_id_from_labels(
        self,
        labels: Iterable[Optional[str]],
        experience_date: Optional[date] = None,
    ) -> Optional[int]:
        """Canonical-name fallback over the candidate labels."""
        for label in labels:
            canonical = apply_new_years_eve_rule(canonical_product_name(label), experience_date)
            if canonical:
                product_id = self.product_id_by_name(canonical)
                if product_id is not None:
                    return product_id
        return None

    def apply_new_years_eve(self, product_id: Optional[int], experience_date: Optional[date]) -> Optional[int]:
        """Swap a resolved pub crawl product for its NYE variant on 31 December."""
        if product_id is None or experience_date is None:
            return product_id
        if not (experience_date.month == 12 and experience_date.day == 31):
            return product_id
        if self.product_name(product_id) != PUB_CRAWL_PRODUCT:
            return product_id
        return self.product_id_by_name(NYE_PRODUCT) or product_id

