"""Package analytics tests.

Tests for PackageAnalyticsAggregator:
- per package type: active clients, revenue, average usage percentage
- overall stats across types (inactive types still count as active packages)
- most used services ranking and percentages
- tenant scope and degradation to an empty result
"""
import pytest
from sqlalchemy.exc import OperationalError

from business.dashboard import Dashboard, PackageAnalytics, PackageAnalyticsAggregator
from database.models import PACKAGE_EXPIRED


def _analytics(db, **kwargs):
    return PackageAnalyticsAggregator(db.conn, db.company_id, **kwargs).compute()


@pytest.fixture
def premium(shop):
    return shop.package_types.create(
        {"name": "Pacote Premium", "validity_days": 60, "total_uses": 12, "price": "700.00"}
    )


class TestPackageTypes:

    def test_type_without_packages(self, shop, catalog):
        analytics = _analytics(shop)
        assert [(t.name, t.price, t.active_clients, t.total_revenue, t.average_usage)
                for t in analytics.package_types] == [("Pacote Básico", 300.0, 0, 0.0, 0)]
        assert analytics.average_package_utilization == 0
        assert analytics.monthly_recurring_revenue == 0.0

    def test_usage_revenue_and_clients(self, shop, premium, make_customer, make_package):
        ana, _ = make_customer(name="Ana Souza")
        bruno, _ = make_customer(name="Bruno Lima", phone="11988887777", pet_name="Thor")
        make_package(ana, remaining_uses=8)
        make_package(bruno)
        make_package(bruno, status=PACKAGE_EXPIRED, remaining_uses=1)
        make_package(ana, package_type=premium, remaining_uses=6)

        analytics = _analytics(shop)

        assert [(t.name, t.active_clients, t.total_revenue, t.average_usage)
                for t in analytics.package_types] == [
            ("Pacote Básico", 2, 600.0, 10),
            ("Pacote Premium", 1, 700.0, 50),
        ]
        assert analytics.total_active_packages == 3
        assert analytics.total_active_clients == 2
        assert analytics.average_package_utilization == 30
        assert analytics.monthly_recurring_revenue == 1300.0

    def test_inactive_type_only_in_overall_counts(self, shop, premium, make_customer, make_package):
        customer, _ = make_customer()
        make_package(customer)
        make_package(customer, package_type=premium)
        shop.package_types.deactivate(premium.id)

        analytics = _analytics(shop)

        assert [t.name for t in analytics.package_types] == ["Pacote Básico"]
        assert analytics.total_active_packages == 2
        assert analytics.monthly_recurring_revenue == 300.0


class TestMostUsedServices:

    def test_ranked_with_percentages(self, shop, catalog, make_customer, make_package, now):
        customer, pet = make_customer()
        package = make_package(customer)
        for service in (catalog.service, catalog.nails, catalog.service, catalog.service):
            shop.usages.record(
                {"customer_package_id": package.id, "pet_id": pet.id, "service_id": service.id},
                now=now,
            )

        services = _analytics(shop).most_used_services
        assert [(s.service_name, s.usage_count, s.percentage) for s in services] == [
            ("Banho & Tosa", 3, 75),
            ("Corte de Unhas", 1, 25),
        ]
        assert [s.service_name for s in _analytics(shop, top_services=1).most_used_services] == [
            "Banho & Tosa"
        ]

    def test_no_usages(self, shop, catalog):
        assert _analytics(shop).most_used_services == []


class TestScopeAndErrors:

    def test_other_company_not_counted(self, temp_db, shop, make_customer, make_package):
        customer, _ = make_customer()
        make_package(customer)

        rival = temp_db.for_company(temp_db.companies.create({"name": "Rival"}).id)
        rival_type = rival.package_types.create(
            {"name": "Pacote Rival", "validity_days": 30, "total_uses": 4, "price": 100}
        )
        rival_customer, _ = make_customer(db=rival)
        make_package(rival_customer, package_type=rival_type, db=rival)

        analytics = _analytics(shop)
        assert [t.name for t in analytics.package_types] == ["Pacote Básico"]
        assert analytics.total_active_packages == 1
        assert analytics.monthly_recurring_revenue == 300.0

    def test_storage_error_returns_empty_result(self, shop, catalog, monkeypatch):
        def _broken():
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        aggregator = PackageAnalyticsAggregator(shop.conn, shop.company_id)
        monkeypatch.setattr(aggregator, "_get_session", _broken)
        assert aggregator.compute() == PackageAnalytics()

    def test_dashboard_dict_shape(self, shop, catalog):
        data = Dashboard(shop).package_analytics()
        assert set(data) == {"package_types", "most_used_services", "overall_stats"}
        assert data["overall_stats"] == {
            "total_active_packages": 0,
            "total_active_clients": 0,
            "average_package_utilization": 0,
            "monthly_recurring_revenue": 0.0,
        }
