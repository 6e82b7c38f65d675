"""Shared fixtures for the test suite.

Provides a fresh temp-file SQLite DatabaseManager for each test, a seeded
tenant (company + service + package type) and small factories for
customers, pets and packages.
"""
import os
import shutil
import tempfile
from datetime import datetime
from types import SimpleNamespace

import pytest

from database import DatabaseManager
from database.connection import DatabaseConnection
from database.base_crud import BaseCRUD
from database.models import CustomerPackage


@pytest.fixture(autouse=True)
def fast_password_hashing(monkeypatch):
    """Use the minimum bcrypt cost so user creation stays fast."""
    monkeypatch.setattr("database.entity_repos.PASSWORD_HASH_ROUNDS", 4)


@pytest.fixture
def temp_db():
    """Yield a fresh, unscoped DatabaseManager bound to a temp SQLite database."""
    temp_dir = tempfile.mkdtemp(prefix="grooming-tests-")
    db_path = os.path.join(temp_dir, "test.db")
    manager = DatabaseManager(database_url=f"sqlite:///{db_path}")
    manager.create_tables()

    try:
        yield manager
    finally:
        manager.close()
        shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def db_conn(temp_db) -> DatabaseConnection:
    """The DatabaseConnection behind temp_db."""
    return temp_db.conn


@pytest.fixture
def base_crud(db_conn):
    """An unscoped BaseCRUD instance."""
    return BaseCRUD(db_conn)


@pytest.fixture
def now():
    """Stable 'current time' (a Wednesday) for deterministic tests."""
    return datetime(2024, 6, 12, 10, 0, 0)


@pytest.fixture
def company(temp_db):
    """A tenant company."""
    return temp_db.companies.create({"name": "Happy Paws", "email": "shop@happypaws.test"})


@pytest.fixture
def shop(temp_db, company):
    """A DatabaseManager scoped to the tenant company."""
    return temp_db.for_company(company.id)


@pytest.fixture
def catalog(shop):
    """One service and one package type (10 uses, 30 days, 300.00)."""
    bath = shop.services.create({"name": "Banho & Tosa", "base_price": 90, "duration": 90})
    nails = shop.services.create({"name": "Corte de Unhas", "base_price": 20, "duration": 15})
    package_type = shop.package_types.create({
        "name": "Pacote Básico",
        "validity_days": 30,
        "total_uses": 10,
        "price": "300.00",
        "services": [
            {"service_id": bath.id, "included_uses": 8, "unit_price": "30.00"},
            {"service_id": nails.id, "included_uses": 2, "unit_price": "30.00"},
        ],
    })
    return SimpleNamespace(service=bath, nails=nails, package_type=package_type)


@pytest.fixture
def make_customer(shop):
    """Factory: create a customer, optionally with one pet."""
    def _make(name="Ana Souza", phone="11999990000", pet_name="Rex",
              species="dog", breed=None, with_pet=True, db=None):
        target = db or shop
        customer = target.customers.create({"name": name, "phone": phone})
        pet = None
        if with_pet:
            pet = target.pets.create({
                "customer_id": customer.id,
                "name": pet_name,
                "species": species,
                "breed": breed,
            })
        return customer, pet
    return _make


@pytest.fixture
def make_package(shop, catalog, now):
    """Factory: purchase a package and optionally force ledger fields."""
    def _make(customer, acquired_at=None, package_type=None, db=None, **overrides):
        target = db or shop
        package = target.packages.purchase(
            {
                "customer_id": customer.id,
                "package_type_id": (package_type or catalog.package_type).id,
            },
            now=acquired_at or now,
        )
        if overrides:
            package = target.packages.update_by_id(
                CustomerPackage, package.id, **overrides
            )
        return package
    return _make
