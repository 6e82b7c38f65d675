"""Renewal engine and expiry sweep tests.

Tests for:
- renew: predecessor marked renewed, successor created from the package type
- renewal is refused for an already-renewed package, also under concurrent calls
- renewal is atomic (storage error leaves the original untouched)
- get_renewal_chain ordering
- expire_overdue sweep (status changes, counts, tenant scope)
"""
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from database.business_repos import CustomerPackageRepository
from database.errors import NotFoundError, PersistenceFailure, ValidationFailure
from database.models import (
    CustomerPackage, PACKAGE_ACTIVE, PACKAGE_CONSUMED, PACKAGE_EXPIRED, PACKAGE_RENEWED,
)


def _run_together(count, call):
    """Start `count` threads that invoke `call` at the same moment.

    Returns each thread's result, or the exception it raised.
    """
    barrier = threading.Barrier(count)

    def _worker():
        barrier.wait()
        try:
            return call()
        except Exception as exc:
            return exc

    with ThreadPoolExecutor(max_workers=count) as pool:
        futures = [pool.submit(_worker) for _ in range(count)]
        return [future.result() for future in futures]


class TestRenew:

    def test_successor_starts_fresh(self, shop, make_customer, make_package, now):
        customer, _ = make_customer()
        original = make_package(customer, acquired_at=now - timedelta(days=20), remaining_uses=3)

        successor = shop.packages.renew(original.id, now=now)

        assert successor.id != original.id
        assert successor.renewed_from_id == original.id
        assert successor.customer_id == customer.id
        assert successor.remaining_uses == 10
        assert successor.valid_until == now + timedelta(days=30)
        assert successor.acquired_at == now
        assert successor.status == PACKAGE_ACTIVE
        assert shop.packages.get(original.id).status == PACKAGE_RENEWED

    def test_leftover_days_not_carried_over(self, shop, make_customer, make_package, now):
        customer, _ = make_customer()
        original = make_package(customer, acquired_at=now - timedelta(days=2))
        successor = shop.packages.renew(original.id, now=now)
        assert successor.valid_until == now + timedelta(days=30)

    def test_successor_uses_current_type_price(self, shop, catalog, make_customer, make_package, now):
        customer, _ = make_customer()
        original = make_package(customer)
        shop.package_types.update(catalog.package_type.id, {"price": "350.00", "total_uses": 12})

        successor = shop.packages.renew(original.id, now=now)
        assert successor.purchase_price == Decimal("350.00")
        assert successor.remaining_uses == 12
        assert shop.packages.get(original.id).purchase_price == Decimal("300.00")

    @pytest.mark.parametrize("status", [PACKAGE_ACTIVE, PACKAGE_CONSUMED, PACKAGE_EXPIRED])
    def test_any_non_renewed_package_can_be_renewed(self, shop, make_customer, make_package, now, status):
        customer, _ = make_customer()
        original = make_package(customer, status=status)
        successor = shop.packages.renew(original.id, now=now)
        assert successor.renewed_from_id == original.id

    def test_renewing_twice_is_refused(self, shop, make_customer, make_package, now):
        customer, _ = make_customer()
        original = make_package(customer)
        shop.packages.renew(original.id, now=now)

        with pytest.raises(ValidationFailure):
            shop.packages.renew(original.id, now=now)
        assert shop.packages.count(CustomerPackage) == 2

    def test_concurrent_renewals_create_one_successor(self, shop, make_customer, make_package, now):
        customer, _ = make_customer()
        original = make_package(customer)

        outcomes = _run_together(4, lambda: shop.packages.renew(original.id, now=now))

        renewed = [o for o in outcomes if isinstance(o, CustomerPackage)]
        refused = [o for o in outcomes if isinstance(o, ValidationFailure)]
        assert len(renewed) == 1
        assert len(refused) == 3
        successors = shop.packages.get_all(
            CustomerPackage, filters={"renewed_from_id": original.id}
        )
        assert [s.id for s in successors] == [renewed[0].id]
        assert shop.packages.get(original.id).status == PACKAGE_RENEWED

    def test_missing_package(self, shop):
        with pytest.raises(NotFoundError):
            shop.packages.renew("missing")

    def test_storage_error_rolls_back(self, shop, make_customer, make_package, now, monkeypatch):
        customer, _ = make_customer()
        original = make_package(customer)

        def _broken(*args, **kwargs):
            raise OperationalError("INSERT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(CustomerPackageRepository, "_new_from_type", staticmethod(_broken))

        with pytest.raises(PersistenceFailure):
            shop.packages.renew(original.id, now=now)

        stored = shop.packages.get(original.id)
        assert stored.status == PACKAGE_ACTIVE
        assert shop.packages.count(CustomerPackage) == 1


class TestRenewalChain:

    def test_chain_is_oldest_first_from_any_member(self, shop, make_customer, make_package, now):
        customer, _ = make_customer()
        first = make_package(customer, acquired_at=now - timedelta(days=60))
        second = shop.packages.renew(first.id, now=now - timedelta(days=30))
        third = shop.packages.renew(second.id, now=now)

        expected = [first.id, second.id, third.id]
        for member in (first, second, third):
            assert [p.id for p in shop.packages.get_renewal_chain(member.id)] == expected

    def test_single_package_chain(self, shop, make_customer, make_package):
        customer, _ = make_customer()
        package = make_package(customer)
        assert [p.id for p in shop.packages.get_renewal_chain(package.id)] == [package.id]


class TestExpireOverdue:

    def test_marks_only_overdue_active_packages(self, shop, make_customer, make_package, now):
        customer, _ = make_customer()
        overdue = make_package(customer, acquired_at=now - timedelta(days=31))
        fresh = make_package(customer)
        consumed = make_package(
            customer, acquired_at=now - timedelta(days=40),
            remaining_uses=0, status=PACKAGE_CONSUMED,
        )

        assert shop.packages.expire_overdue(now=now) == 1
        assert shop.packages.get(overdue.id).status == PACKAGE_EXPIRED
        assert shop.packages.get(fresh.id).status == PACKAGE_ACTIVE
        assert shop.packages.get(consumed.id).status == PACKAGE_CONSUMED

    def test_sweep_is_idempotent(self, shop, make_customer, make_package, now):
        customer, _ = make_customer()
        make_package(customer, acquired_at=now - timedelta(days=31))
        assert shop.packages.expire_overdue(now=now) == 1
        assert shop.packages.expire_overdue(now=now) == 0

    def test_package_expiring_exactly_now_is_kept(self, shop, make_customer, make_package, now):
        customer, _ = make_customer()
        package = make_package(customer, valid_until=now)
        assert shop.packages.expire_overdue(now=now) == 0
        assert shop.packages.get(package.id).status == PACKAGE_ACTIVE

    def test_sweep_stays_inside_tenant(self, temp_db, shop, catalog, make_customer, make_package, now):
        other = temp_db.for_company(temp_db.companies.create({"name": "Other"}).id)
        other_type = other.package_types.create(
            {"name": "Mensal", "validity_days": 30, "total_uses": 4, "price": 120}
        )
        other_customer, _ = make_customer(name="Zed", db=other)
        foreign = make_package(
            other_customer, package_type=other_type, db=other,
            acquired_at=now - timedelta(days=31),
        )

        assert shop.packages.expire_overdue(now=now) == 0
        assert other.packages.get(foreign.id).status == PACKAGE_ACTIVE
        assert temp_db.packages.expire_overdue(now=now) == 1
