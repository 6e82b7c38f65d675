"""Revenue aggregation and recent activity tests.

Tests for:
- RevenueAggregator: grouping by package type, active-only, sort order, colors
- color_for / utf16_code_sum fallback palette
- repeated computation over an unchanged ledger gives identical output
- RecentActivityFeed entries and format_time_ago wording
"""
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from business.dashboard import (
    Dashboard, RecentActivityFeed, RevenueAggregator, color_for, format_time_ago,
    utf16_code_sum,
)
from config.business_config import business_config
from database.models import PACKAGE_EXPIRED, PACKAGE_RENEWED


def _revenue(db):
    return RevenueAggregator(db.conn, db.company_id).compute()


def _broken():
    raise OperationalError("SELECT", {}, Exception("database is locked"))


@pytest.fixture
def premium(shop):
    return shop.package_types.create(
        {"name": "Pacote Premium", "validity_days": 60, "total_uses": 12, "price": "700.00"}
    )


class TestRevenueAggregator:

    def test_grouped_and_sorted(self, shop, premium, make_customer, make_package):
        customer, _ = make_customer()
        make_package(customer)
        make_package(customer)
        make_package(customer, package_type=premium)

        items = [item.to_dict() for item in _revenue(shop)]
        assert items == [
            {"name": "Pacote Premium", "revenue": 700.0, "color": "purple", "packages": 1},
            {"name": "Pacote Básico", "revenue": 600.0, "color": "blue", "packages": 2},
        ]

    def test_only_status_active_packages(self, shop, make_customer, make_package, now):
        customer, _ = make_customer()
        make_package(customer)
        make_package(customer, status=PACKAGE_EXPIRED)
        make_package(customer, status=PACKAGE_RENEWED)
        # past validity but still active by status
        make_package(customer, acquired_at=now - timedelta(days=60))

        items = _revenue(shop)
        assert [(i.name, i.revenue, i.packages) for i in items] == [("Pacote Básico", 600.0, 2)]

    def test_uses_purchase_price_not_current_price(self, shop, catalog, make_customer, make_package):
        customer, _ = make_customer()
        make_package(customer)
        shop.package_types.update(catalog.package_type.id, {"price": "999.00"})
        assert _revenue(shop)[0].revenue == 300.0

    def test_unlisted_name_uses_palette(self, shop, make_customer, make_package):
        spa = shop.package_types.create(
            {"name": "Spa Day", "validity_days": 10, "total_uses": 2, "price": 80}
        )
        customer, _ = make_customer()
        make_package(customer, package_type=spa)

        palette = business_config.get_fallback_palette()
        expected = palette[sum(ord(ch) for ch in "Spa Day") % len(palette)]
        assert _revenue(shop)[0].color == expected

    def test_repeated_runs_are_identical(self, shop, premium, make_customer, make_package):
        customer, _ = make_customer()
        make_package(customer)
        make_package(customer, package_type=premium)
        make_package(customer)
        first = [item.to_dict() for item in _revenue(shop)]
        second = [item.to_dict() for item in _revenue(shop)]
        assert first == second

    def test_empty_ledger(self, shop):
        assert Dashboard(shop).revenue_by_service() == []

    def test_storage_error_returns_empty(self, shop, monkeypatch):
        aggregator = RevenueAggregator(shop.conn, shop.company_id)
        monkeypatch.setattr(aggregator, "_get_session", _broken)
        assert aggregator.compute() == []


class TestColors:

    def test_table_hit(self):
        assert color_for("Banho & Tosa") == "blue"

    def test_ascii_sum(self):
        assert utf16_code_sum("abc") == 97 + 98 + 99

    def test_astral_characters_count_as_surrogate_pairs(self):
        assert utf16_code_sum("🐶") == 0xD83D + 0xDC36

    def test_fallback_is_stable(self):
        assert color_for("Pacote Família") == color_for("Pacote Família")


class TestFormatTimeAgo:

    @pytest.mark.parametrize("delta, expected", [
        (timedelta(minutes=30), "a few minutes ago"),
        (timedelta(hours=1), "1 hour ago"),
        (timedelta(hours=5, minutes=59), "5 hours ago"),
        (timedelta(hours=24), "1 day ago"),
        (timedelta(days=3, hours=2), "3 days ago"),
    ])
    def test_wording(self, now, delta, expected):
        assert format_time_ago(now - delta, now) == expected


class TestRecentActivity:

    def test_entries_newest_first(self, shop, catalog, make_customer, make_package, now):
        customer, pet = make_customer(name="Ana Souza", pet_name="Rex", breed="Poodle")
        package = make_package(customer, acquired_at=now - timedelta(days=5))
        for hours in (50, 2):
            shop.usages.record(
                {"customer_package_id": package.id, "pet_id": pet.id, "service_id": catalog.service.id},
                now=now - timedelta(hours=hours),
            )

        activity = Dashboard(shop).recent_activity(now)

        assert activity[0] == {
            "type": "package_used",
            "title": "Package used",
            "customer_name": "Ana Souza",
            "description": "Rex (Poodle)",
            "details": "Banho & Tosa • 2 hours ago",
            "icon": "check",
            "color": "green",
            "used_at": now - timedelta(hours=2),
        }
        assert activity[1]["details"] == "Banho & Tosa • 2 days ago"

    def test_limit(self, shop, catalog, make_customer, make_package, now):
        customer, pet = make_customer(species="cat")
        package = make_package(customer, acquired_at=now - timedelta(days=5))
        for hours in range(1, 5):
            shop.usages.record(
                {"customer_package_id": package.id, "pet_id": pet.id, "service_id": catalog.nails.id},
                now=now - timedelta(hours=hours),
            )
        feed = RecentActivityFeed(shop.conn, shop.company_id, limit=3)
        activity = feed.compute(now)
        assert len(activity) == 3
        assert activity[0]["description"] == "Rex (cat)"

    def test_storage_error_returns_empty(self, shop, now, monkeypatch):
        feed = RecentActivityFeed(shop.conn, shop.company_id)
        monkeypatch.setattr(feed, "_get_session", _broken)
        assert feed.compute(now) == []
