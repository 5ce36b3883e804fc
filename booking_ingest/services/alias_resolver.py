"""
Product alias resolution.

Maps the free-text product labels that parsers extract to catalog product ids.
The bound alias list is cached for ALIAS_CACHE_TTL_SECONDS; a newly curated
alias is picked up at the latest one TTL later. Labels that match nothing are
recorded as pending aliases (product_id NULL) for operators to curate.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..models.product_alias import AliasMatchType, AliasSource, ProductAlias
from ..utils.datetime_utils import utcnow
from ..utils.db_helpers import AtomicCounter
from ..utils.ttl_cache import TTLCache
from .parsers.text_utils import normalize_label

logger = logging.getLogger(__name__)

ALIAS_CACHE_KEY = "bound_aliases"
PENDING_ALIAS_PRIORITY = 100

# Shared by every resolver in the process
default_alias_cache = TTLCache(ttl_seconds=settings.alias_cache_ttl_seconds)


@dataclass(frozen=True)
class AliasSnapshot:
    """Detached copy of a ProductAlias row, safe to share across sessions."""
    id: int
    product_id: int
    label: str
    normalized_label: str
    match_type: str
    priority: int

    def matches(self, candidate: str) -> bool:
        if self.match_type == AliasMatchType.REGEX.value:
            try:
                pattern = re.compile(self.label, re.IGNORECASE)
            except re.error as e:
                logger.warning(f"Invalid regex on product alias {self.id} ({self.label!r}): {e}")
                return False
            return pattern.search(candidate) is not None

        normalized = normalize_label(candidate)
        if not normalized or not self.normalized_label:
            return False
        if self.match_type == AliasMatchType.EXACT.value:
            return normalized == self.normalized_label
        return self.normalized_label in normalized


@dataclass
class AliasMatch:
    alias_id: int
    product_id: int
    candidate: str


class AliasResolver:
    """
    Resolve product ids for one session.

    Example:
        resolver = AliasResolver(db)
        product_id = resolver.resolve(["Krawl Through Krakow", None, "notes"])
    """

    def __init__(
        self,
        db: Session,
        cache: Optional[TTLCache] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.cache = cache if cache is not None else default_alias_cache
        self.clock = clock

    def _load_aliases(self) -> List[AliasSnapshot]:
        rows = (
            self.db.query(ProductAlias)
            .filter(ProductAlias.active.is_(True), ProductAlias.product_id.isnot(None))
            .order_by(ProductAlias.priority.asc(), ProductAlias.id.asc())
            .all()
        )
        logger.debug(f"Loaded {len(rows)} bound product aliases")
        return [
            AliasSnapshot(
                id=row.id,
                product_id=row.product_id,
                label=row.label,
                normalized_label=row.normalized_label or normalize_label(row.label),
                match_type=row.match_type,
                priority=row.priority,
            )
            for row in rows
        ]

    def aliases(self) -> List[AliasSnapshot]:
        return self.cache.get_or_load(ALIAS_CACHE_KEY, self._load_aliases)

    def match(self, candidates: Iterable[Optional[str]]) -> Optional[AliasMatch]:
        """First alias (priority asc, id asc) that matches any candidate."""
        usable = [c for c in candidates if c and c.strip()]
        if not usable:
            return None
        for alias in self.aliases():
            for candidate in usable:
                if alias.matches(candidate):
                    return AliasMatch(alias_id=alias.id, product_id=alias.product_id, candidate=candidate)
        return None

    def resolve(self, candidates: Iterable[Optional[str]]) -> Optional[int]:
        """
        Resolve a product id from (product_name, product_variant, notes).

        Bumps the hit counter of the matching alias, or records the first
        non-empty candidate as a pending alias when nothing matches.
        """
        candidates = list(candidates)
        hit = self.match(candidates)
        now = self.clock()
        if hit is not None:
            AtomicCounter.increment(
                self.db, ProductAlias, ProductAlias.id == hit.alias_id, "hit_count",
                last_seen_at=now,
            )
            return hit.product_id

        first = next((c.strip() for c in candidates if c and c.strip()), None)
        if first:
            self.record_pending(first, now)
        return None

    def record_pending(self, label: str, now: Optional[datetime] = None) -> None:
        """Upsert an unmatched label by its normalized form."""
        now = now or self.clock()
        normalized = normalize_label(label)
        if not normalized:
            return
        label = label[:255]
        normalized = normalized[:255]

        existing = self.db.query(ProductAlias.id).filter(ProductAlias.normalized_label == normalized).first()
        if existing is None:
            try:
                with self.db.begin_nested():
                    self.db.add(ProductAlias(
                        product_id=None,
                        label=label,
                        normalized_label=normalized,
                        match_type=AliasMatchType.CONTAINS.value,
                        priority=PENDING_ALIAS_PRIORITY,
                        active=True,
                        hit_count=1,
                        first_seen_at=now,
                        last_seen_at=now,
                        source=AliasSource.INGESTION.value,
                    ))
                logger.info(f"Recorded pending product alias {label!r}")
                return
            except IntegrityError:
                # Another worker inserted the same label first
                logger.debug(f"Pending alias {normalized!r} already recorded concurrently")

        AtomicCounter.increment(
            self.db, ProductAlias, ProductAlias.normalized_label == normalized, "hit_count",
            last_seen_at=now,
        )
