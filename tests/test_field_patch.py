"""
Tests for BookingFieldPatch

Tests cover:
- Three-state fields (UNSET / None / value)
- Fixed-point money normalization
- Timestamp normalization to naive UTC
- Absolute vs delta slots
- JSON rendering for the audit log
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from booking_ingest.services.parsers.base import (
    UNSET,
    AddonLine,
    BookingFieldPatch,
    ParsedBookingEvent,
)
from booking_ingest.services.parsers.text_utils import normalize_decimal, parse_money, split_name


class TestThreeStateFields:

    def test_unset_fields_are_not_reported(self):
        """A fresh patch declares nothing"""
        patch = BookingFieldPatch()
        assert not patch
        assert list(patch.set_fields()) == []
        assert patch.guest_email is UNSET

    def test_explicit_none_is_a_declared_clear(self):
        """None means 'clear the stored value', which differs from UNSET"""
        patch = BookingFieldPatch(hotel_name=None)
        assert patch.is_set("hotel_name")
        assert dict(patch.set_fields()) == {"hotel_name": None}

    def test_copy_keeps_unset_and_applies_changes(self):
        patch = BookingFieldPatch(guest_first_name="Jane")
        clone = patch.copy(guest_last_name="Doe")
        assert clone.guest_first_name == "Jane"
        assert clone.guest_last_name == "Doe"
        assert clone.guest_email is UNSET
        assert patch.guest_last_name is UNSET

    def test_copy_can_unset_a_field(self):
        patch = BookingFieldPatch(product_id=7, product_name="Food Tour")
        assert not patch.copy(product_id=UNSET).is_set("product_id")


class TestNormalization:

    def test_money_is_quantized_to_cents(self):
        """Amounts are Decimal with two places regardless of input type"""
        patch = BookingFieldPatch(price_gross="1,234.5", base_amount=99, commission_rate=12.345)
        assert patch.price_gross == Decimal("1234.50")
        assert patch.base_amount == Decimal("99.00")
        assert patch.commission_rate == Decimal("12.34")

    def test_comma_decimal_separator(self):
        assert normalize_decimal("120,50") == Decimal("120.50")
        assert normalize_decimal("not money") is None

    def test_aware_datetimes_become_naive_utc(self):
        warsaw = timezone(timedelta(hours=1))
        patch = BookingFieldPatch(experience_start_at=datetime(2025, 3, 14, 20, 0, tzinfo=warsaw))
        assert patch.experience_start_at == datetime(2025, 3, 14, 19, 0)
        assert patch.experience_start_at.tzinfo is None

    def test_experience_date_coerced_from_iso_string(self):
        assert BookingFieldPatch(experience_date="2025-03-14").experience_date == date(2025, 3, 14)

    def test_event_timestamps_normalized(self):
        event = ParsedBookingEvent(
            platform="fareharbor",
            platform_booking_id="1",
            status="confirmed",
            event_type="created",
            occurred_at=datetime(2025, 3, 1, 10, 0, tzinfo=timezone(timedelta(hours=1))),
        )
        assert event.occurred_at == datetime(2025, 3, 1, 9, 0)

    def test_addon_line_amounts_normalized(self):
        line = AddonLine(platform_addon_name="Photos", unit_price="10", total_price=20.5)
        assert line.unit_price == Decimal("10.00")
        assert line.total_price == Decimal("20.50")


class TestSlots:

    def test_absolute_and_delta_fields_are_separated(self):
        patch = BookingFieldPatch(party_size_adults=4, party_size_adults_delta=2,
                                  addons_extras_delta={"cocktails": 1})
        assert patch.absolute_fields() == {"party_size_adults": 4}
        assert patch.delta_fields() == {"party_size_adults_delta": 2, "addons_extras_delta": {"cocktails": 1}}

    def test_to_json_renders_declared_fields_only(self):
        patch = BookingFieldPatch(
            price_gross=Decimal("10"),
            experience_date=date(2025, 3, 14),
            hotel_name=None,
        )
        assert patch.to_json() == {
            "experience_date": "2025-03-14",
            "price_gross": "10.00",
            "hotel_name": None,
        }

    def test_spawned_events_iterate_depth_first(self):
        child = ParsedBookingEvent("ecwid", "A-2", "confirmed", "created")
        grandchild = ParsedBookingEvent("ecwid", "A-3", "confirmed", "created")
        child.spawned_events.append(grandchild)
        parent = ParsedBookingEvent("ecwid", "A", "confirmed", "created", spawned_events=[child])
        assert [e.platform_booking_id for e in parent.iter_events()] == ["A", "A-2", "A-3"]


class TestTextHelpers:

    def test_parse_money_symbols(self):
        assert parse_money("$12.50") == (Decimal("12.50"), "USD")
        assert parse_money("120,00 zł") == (Decimal("120.00"), "PLN")

    def test_split_name(self):
        assert split_name("Jane van Doe") == ("Jane", "van Doe")
        assert split_name("Cher") == ("Cher", None)
        assert split_name("") == (None, None)
