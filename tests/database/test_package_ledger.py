"""Package ledger tests.

Tests for CustomerPackageRepository:
- purchase: counts, validity and price copied from the package type,
  optional start date taken from the payload
- purchase rejections (missing customer/type, inactive type, other tenant)
- get_active: the usable-package predicate and ordering
- list_by_customer / list_with_details
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from database.errors import NotFoundError, ValidationFailure
from database.models import (
    CustomerPackage, PACKAGE_ACTIVE, PACKAGE_CONSUMED, PACKAGE_EXPIRED,
)


class TestPurchase:

    def test_purchase_copies_package_type_terms(self, shop, catalog, make_customer, now):
        customer, _ = make_customer()
        package = shop.packages.purchase(
            {"customer_id": customer.id, "package_type_id": catalog.package_type.id},
            now=now,
        )
        assert package.remaining_uses == 10
        assert package.valid_until == now + timedelta(days=30)
        assert package.purchase_price == Decimal("300.00")
        assert package.status == PACKAGE_ACTIVE

    def test_start_date_from_payload(self, shop, catalog, make_customer, now):
        customer, _ = make_customer()
        start = datetime(2024, 5, 1, 12, 0, tzinfo=timezone(timedelta(hours=-3)))
        package = shop.packages.purchase(
            {"customer_id": customer.id, "package_type_id": catalog.package_type.id,
             "acquired_at": start},
            now=now,
        )
        assert package.acquired_at == datetime(2024, 5, 1, 15, 0)
        assert package.valid_until == datetime(2024, 5, 31, 15, 0)

    def test_price_change_does_not_touch_sold_packages(self, shop, catalog, make_customer, make_package):
        customer, _ = make_customer()
        package = make_package(customer)
        shop.package_types.update(catalog.package_type.id, {"price": "450.00"})
        assert shop.packages.get(package.id).purchase_price == Decimal("300.00")

    def test_missing_customer(self, shop, catalog):
        with pytest.raises(NotFoundError) as exc_info:
            shop.packages.purchase({"customer_id": "missing", "package_type_id": catalog.package_type.id})
        assert exc_info.value.entity == "Customer"

    def test_missing_package_type(self, shop, make_customer):
        customer, _ = make_customer()
        with pytest.raises(NotFoundError) as exc_info:
            shop.packages.purchase({"customer_id": customer.id, "package_type_id": "missing"})
        assert exc_info.value.entity == "PackageType"

    def test_inactive_package_type(self, shop, catalog, make_customer):
        customer, _ = make_customer()
        shop.package_types.deactivate(catalog.package_type.id)
        with pytest.raises(ValidationFailure) as exc_info:
            shop.packages.purchase(
                {"customer_id": customer.id, "package_type_id": catalog.package_type.id}
            )
        assert exc_info.value.errors[0]["field"] == "package_type_id"
        assert shop.packages.count(CustomerPackage) == 0

    def test_package_type_from_other_company(self, temp_db, catalog):
        other = temp_db.companies.create({"name": "Other"})
        other_customer = temp_db.customers.create(
            {"name": "Zed", "phone": "1100000000"}, company_id=other.id
        )
        # unscoped manager still refuses to mix tenants
        with pytest.raises(NotFoundError):
            temp_db.packages.purchase(
                {"customer_id": other_customer.id, "package_type_id": catalog.package_type.id}
            )

    def test_missing_fields(self, shop):
        with pytest.raises(ValidationFailure) as exc_info:
            shop.packages.purchase({})
        fields = {err["field"] for err in exc_info.value.errors}
        assert fields == {"customer_id", "package_type_id"}


class TestActivePackages:

    def test_usable_predicate(self, shop, make_customer, make_package, now):
        customer, _ = make_customer()
        usable = make_package(customer)
        make_package(customer, remaining_uses=0, status=PACKAGE_CONSUMED)
        make_package(customer, valid_until=now - timedelta(minutes=1))
        make_package(customer, status=PACKAGE_EXPIRED)

        active = shop.packages.get_active(now=now)
        assert [p.id for p in active] == [usable.id]

    def test_valid_until_boundary_is_inclusive(self, shop, make_customer, make_package, now):
        customer, _ = make_customer()
        package = make_package(customer, valid_until=now)
        assert [p.id for p in shop.packages.get_active(now=now)] == [package.id]

    def test_every_active_package_satisfies_predicate(self, shop, make_customer, make_package, now):
        customer, _ = make_customer()
        for days_ago in (0, 10, 29, 31, 45):
            make_package(customer, acquired_at=now - timedelta(days=days_ago))
        for package in shop.packages.get_active(now=now):
            assert package.status == PACKAGE_ACTIVE
            assert package.valid_until >= now
            assert package.remaining_uses >= 1

    def test_ordered_by_acquisition(self, shop, make_customer, make_package, now):
        customer, _ = make_customer()
        newer = make_package(customer, acquired_at=now - timedelta(days=1))
        older = make_package(customer, acquired_at=now - timedelta(days=5))
        assert [p.id for p in shop.packages.get_active(now=now)] == [older.id, newer.id]


class TestListing:

    def test_list_by_customer_newest_first(self, shop, make_customer, make_package, now):
        customer, _ = make_customer()
        older = make_package(customer, acquired_at=now - timedelta(days=5))
        newer = make_package(customer, acquired_at=now - timedelta(days=1))
        other, _ = make_customer(name="Bruno", with_pet=False)
        make_package(other)
        assert [p.id for p in shop.packages.list_by_customer(customer.id)] == [newer.id, older.id]

    def test_list_with_details(self, shop, make_customer, make_package):
        customer, _ = make_customer(name="Ana Souza")
        make_package(customer)
        rows = shop.packages.list_with_details()
        assert rows[0]["customer_name"] == "Ana Souza"
        assert rows[0]["package_type_name"] == "Pacote Básico"
        assert rows[0]["purchase_price"] == 300.0

    def test_get_missing_package(self, shop):
        with pytest.raises(NotFoundError):
            shop.packages.get("missing")
