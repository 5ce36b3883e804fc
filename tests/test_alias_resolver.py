"""
Tests for AliasResolver

Tests cover:
- Deterministic matching order (priority, then id)
- Exact, contains and regex aliases
- Hit counting on matched aliases
- Pending alias recording for unmatched labels
- TTL-bounded alias cache
"""

from datetime import datetime

from booking_ingest.models.catalog import Product
from booking_ingest.models.product_alias import AliasSource, ProductAlias
from booking_ingest.services.alias_resolver import AliasResolver
from booking_ingest.services.parsers.text_utils import normalize_label
from booking_ingest.utils.ttl_cache import TTLCache

from conftest import FixedClock


class FakeMonotonic:
    def __init__(self):
        self.value = 0.0

    def __call__(self):
        return self.value


def add_product(db, name):
    product = Product(name=name)
    db.add(product)
    db.flush()
    return product


def add_alias(db, label, product, match_type="contains", priority=100, active=True):
    alias = ProductAlias(
        label=label,
        normalized_label=normalize_label(label) or label,
        product_id=product.id if product else None,
        match_type=match_type,
        priority=priority,
        active=active,
    )
    db.add(alias)
    db.flush()
    return alias


def make_resolver(db, cache=None, clock=None):
    return AliasResolver(db, cache=cache or TTLCache(60), clock=clock or FixedClock())


class TestMatchingOrder:

    def test_lower_priority_wins(self, db):
        tour = add_product(db, "Walking Tour")
        food = add_product(db, "Food Tour")
        add_alias(db, "food tour", food, priority=10)
        add_alias(db, "tour", tour, priority=5)
        db.commit()

        assert make_resolver(db).resolve(["Krakow Food Tour"]) == tour.id

    def test_equal_priority_falls_back_to_id(self, db):
        first = add_product(db, "First")
        second = add_product(db, "Second")
        add_alias(db, "crawl", first, priority=5)
        add_alias(db, "pub crawl", second, priority=5)
        db.commit()

        assert make_resolver(db).resolve(["Pub Crawl Krakow"]) == first.id

    def test_exact_alias_requires_whole_label(self, db):
        """'VIP Tour' (exact) does not claim 'VIP Tour Experience'; 'VIP' (contains) does"""
        contains_product = add_product(db, "VIP Experience")
        exact_product = add_product(db, "VIP Tour")
        add_alias(db, "VIP", contains_product, priority=10)
        add_alias(db, "VIP Tour", exact_product, match_type="exact", priority=5)
        db.commit()

        resolver = make_resolver(db)
        assert resolver.resolve(["VIP Tour Experience"]) == contains_product.id
        assert resolver.resolve(["vip   tour!"]) == exact_product.id

    def test_candidates_are_tried_per_alias(self, db):
        """The best alias wins even if it only matches a later candidate"""
        brunch = add_product(db, "Bottomless Brunch")
        tour = add_product(db, "Walking Tour")
        add_alias(db, "brunch", brunch, priority=1)
        add_alias(db, "tour", tour, priority=50)
        db.commit()

        assert make_resolver(db).resolve(["Old Town Tour", "Sunday brunch add-on"]) == brunch.id

    def test_regex_alias(self, db):
        karting = add_product(db, "Go-Karting")
        add_alias(db, r"go[-\s]?kart", karting, match_type="regex", priority=1)
        db.commit()

        assert make_resolver(db).resolve(["Indoor GO KART race"]) == karting.id

    def test_invalid_regex_is_skipped(self, db):
        broken = add_product(db, "Broken")
        fallback = add_product(db, "Fallback")
        add_alias(db, "(", broken, match_type="regex", priority=1)
        add_alias(db, "walk", fallback, priority=5)
        db.commit()

        assert make_resolver(db).resolve(["Evening walk"]) == fallback.id

    def test_inactive_and_pending_aliases_never_match(self, db):
        product = add_product(db, "Walking Tour")
        add_alias(db, "walking", product, active=False)
        add_alias(db, "tour", None)
        db.commit()

        assert make_resolver(db).match(["Walking Tour"]) is None


class TestHitCounting:

    def test_match_increments_hit_count(self, db):
        product = add_product(db, "Food Tour")
        alias = add_alias(db, "food tour", product)
        db.commit()

        clock = FixedClock(datetime(2025, 3, 5, 8, 0))
        resolver = make_resolver(db, clock=clock)
        resolver.resolve(["Krakow Food Tour"])
        resolver.resolve(["Food Tour (English)"])
        db.commit()

        db.refresh(alias)
        assert alias.hit_count == 2
        assert alias.last_seen_at == datetime(2025, 3, 5, 8, 0)


class TestPendingAliases:

    def test_unmatched_label_is_recorded_once(self, db):
        clock = FixedClock(datetime(2025, 3, 5, 8, 0))
        resolver = make_resolver(db, clock=clock)

        assert resolver.resolve([None, "  ", "Mystery Walk", "other"]) is None
        assert resolver.resolve(["mystery walk"]) is None
        db.commit()

        rows = db.query(ProductAlias).all()
        assert len(rows) == 1
        pending = rows[0]
        assert pending.is_pending
        assert pending.label == "Mystery Walk"
        assert pending.normalized_label == "mystery walk"
        assert pending.source == AliasSource.INGESTION.value
        assert pending.hit_count == 2
        assert pending.first_seen_at == datetime(2025, 3, 5, 8, 0)

    def test_no_candidates_records_nothing(self, db):
        assert make_resolver(db).resolve([None, ""]) is None
        db.commit()
        assert db.query(ProductAlias).count() == 0

    def test_curated_pending_alias_starts_matching(self, db):
        resolver = make_resolver(db)
        resolver.resolve(["Sunset Kayak"])
        db.commit()

        product = add_product(db, "Kayak Tour")
        pending = db.query(ProductAlias).one()
        pending.product_id = product.id
        db.commit()
        resolver.cache.invalidate()

        assert resolver.resolve(["Sunset Kayak"]) == product.id


class TestAliasCache:

    def test_new_alias_visible_after_ttl(self, db):
        ticks = FakeMonotonic()
        resolver = make_resolver(db, cache=TTLCache(ttl_seconds=60, clock=ticks))
        assert resolver.match(["Food Tour"]) is None

        product = add_product(db, "Food Tour")
        add_alias(db, "food tour", product)
        db.commit()

        ticks.value = 59
        assert resolver.match(["Food Tour"]) is None

        ticks.value = 60
        hit = resolver.match(["Food Tour"])
        assert hit is not None
        assert hit.product_id == product.id

    def test_cache_shared_between_resolvers(self, db):
        product = add_product(db, "Food Tour")
        add_alias(db, "food tour", product)
        db.commit()

        cache = TTLCache(60)
        make_resolver(db, cache=cache).aliases()
        assert "bound_aliases" in cache
        assert len(make_resolver(db, cache=cache).aliases()) == 1
