"""初始化数据库：建表并写入种子数据（公司、店主账号、服务、套餐类型）

使用方式：
    python scripts/init_db.py --company "Pet Shop" --email owner@petshop.com --password secret123
"""
import argparse
import sys
import os

# 添加项目根目录到路径
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import DatabaseManager
from database.models import Company
from config.business_config import business_config, BusinessConfig
from loguru import logger


def seed_company(db: DatabaseManager, company_name: str, owner_email: str,
                 owner_password: str, owner_name: str = "Owner",
                 config: BusinessConfig = business_config) -> str:
    """创建公司及其店主账号、服务目录和套餐类型

    已存在相同邮箱的公司时直接返回其ID，不重复写入。

    Returns:
        公司ID
    """
    existing = db.companies.get_all(Company, filters={"email": owner_email})
    if existing:
        logger.info(f"Company already exists: {existing[0].name}")
        return existing[0].id

    company = db.companies.create({"name": company_name, "email": owner_email})
    shop = db.for_company(company.id)

    shop.users.create({
        "name": owner_name,
        "email": owner_email,
        "password": owner_password,
        "role": "owner",
    })
    logger.info(f"Created owner account: {owner_email}")

    service_ids = {}
    for service in config.get_services():
        created = shop.services.create(service)
        service_ids[created.name] = created.id
        logger.info(f"Created service: {created.name}")

    for package_type in config.get_package_types():
        data = dict(package_type)
        data["services"] = [
            {
                "service_id": service_ids[item["name"]],
                "included_uses": item["included_uses"],
                "unit_price": item["unit_price"],
            }
            for item in package_type.get("services", [])
        ]
        shop.package_types.create(data)

    return company.id


def init_database(argv=None):
    """初始化数据库和种子数据"""
    parser = argparse.ArgumentParser(description="Create tables and seed a company")
    parser.add_argument("--db", default=None, help="database URL")
    parser.add_argument("--company", default="Pet Grooming Demo")
    parser.add_argument("--email", default="owner@example.com")
    parser.add_argument("--password", default="change-me")
    args = parser.parse_args(argv)

    logger.info("Initializing database...")
    db = DatabaseManager(args.db)

    logger.info("Creating tables...")
    db.create_tables()

    logger.info("Inserting seed data...")
    company_id = seed_company(db, args.company, args.email, args.password)
    logger.info(f"Database initialization completed! company_id={company_id}")
    db.close()
    return company_id


if __name__ == "__main__":
    init_database()
