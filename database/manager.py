"""数据库管理器 —— 统一门面（Facade）。

DatabaseManager 是 database 模块的统一入口，组合了所有子仓库，
提供两套 API：

1. **子仓库访问**（细粒度）：
   通过 ``db.customers``、``db.packages`` 等属性直接访问子仓库，
   返回 ORM 对象，适合需要精细控制的场景。

2. **便捷方法**（粗粒度）：
   提供扁平化的方法（如 ``record_usage()``、``renew_package()``），
   返回字典/基本类型，适合上层业务代码和 API 调用。

租户隔离：``db.for_company(company_id)`` 返回绑定到该公司的门面，
共享同一数据库连接，其所有子仓库的查询都只能看到该公司的数据。
"""
from datetime import datetime
from typing import Optional, List, Dict, Any

from sqlalchemy.orm import Session

from config.business_config import business_config
from .connection import DatabaseConnection
from .entity_repos import (
    CompanyRepository, UserRepository, CustomerRepository, PetRepository,
    ServiceRepository, PackageTypeRepository
)
from .business_repos import (
    CustomerPackageRepository, PackageUsageRepository, AppointmentRepository
)
from .system_repos import NotificationRepository
from .models import CustomerPackage, PackageType


class DatabaseManager:
    """数据库管理器 —— 统一门面。

    Attributes:
        conn: 数据库连接管理器。
        company_id: 绑定的租户ID（None 表示不做租户过滤）。
        companies: 公司仓库。
        users: 操作员仓库。
        customers: 顾客仓库。
        pets: 宠物仓库。
        services: 服务仓库。
        package_types: 套餐类型仓库。
        packages: 顾客套餐（台账）仓库。
        usages: 使用记录仓库。
        appointments: 预约仓库。
        notifications: 通知仓库。

    Example::

        db = DatabaseManager("sqlite:///data/grooming.db")
        db.create_tables()

        shop = db.for_company(company_id)
        package = shop.purchase_package(customer_id, package_type_id)
        shop.record_usage(package["id"], pet_id, service_id)
    """

    def __init__(self, database_url: Optional[str] = None,
                 company_id: Optional[str] = None,
                 conn: Optional[DatabaseConnection] = None) -> None:
        """初始化数据库管理器。

        Args:
            database_url: 数据库连接URL。如果为None则使用settings配置。
            company_id: 绑定的租户ID（可选）。
            conn: 复用已有的数据库连接（for_company 使用）。
        """
        # 基础设施层
        self._owns_connection = conn is None
        self.conn = conn or DatabaseConnection(database_url)
        self.company_id = company_id

        # 实体仓库
        self.companies = CompanyRepository(self.conn, company_id)
        self.users = UserRepository(self.conn, company_id)
        self.customers = CustomerRepository(self.conn, company_id)
        self.pets = PetRepository(self.conn, company_id)
        self.services = ServiceRepository(self.conn, company_id)
        self.package_types = PackageTypeRepository(self.conn, company_id)

        # 套餐台账与预约
        self.packages = CustomerPackageRepository(self.conn, company_id)
        self.usages = PackageUsageRepository(self.conn, company_id)
        self.appointments = AppointmentRepository(self.conn, company_id)

        # 系统数据
        self.notifications = NotificationRepository(self.conn, company_id)

    def for_company(self, company_id: str) -> "DatabaseManager":
        """返回绑定到指定公司的门面（共享数据库连接）。"""
        return DatabaseManager(conn=self.conn, company_id=company_id)

    # ================================================================
    # 基础设施方法
    # ================================================================

    def create_tables(self) -> None:
        """创建所有数据库表（幂等操作）。"""
        self.conn.create_tables()

    def get_session(self) -> Session:
        """获取数据库会话。"""
        return self.conn.get_session()

    @property
    def database_url(self) -> str:
        """数据库连接URL。"""
        return self.conn.database_url

    @property
    def engine(self):
        """SQLAlchemy 引擎对象。"""
        return self.conn.engine

    def execute_raw_sql(self, sql: str,
                        params: Optional[dict] = None) -> Any:
        """执行原始 SQL 语句（不受租户过滤）。"""
        return self.conn.execute_raw_sql(sql, params)

    def close(self) -> None:
        """关闭数据库连接（for_company 创建的门面不关闭共享连接）。"""
        if self._owns_connection:
            self.conn.close()

    # ================================================================
    # 便捷方法：套餐台账
    # ================================================================

    def purchase_package(self, customer_id: str, package_type_id: str,
                         now: Optional[datetime] = None) -> Dict[str, Any]:
        """顾客购买套餐，返回新套餐字典。"""
        package = self.packages.purchase(
            {"customer_id": customer_id, "package_type_id": package_type_id},
            now=now,
        )
        return package.to_dict()

    def get_active_packages(self, now: Optional[datetime] = None
                            ) -> List[Dict[str, Any]]:
        """获取所有可用套餐（status=active、未过期、剩余次数 >= 1）。"""
        return [p.to_dict() for p in self.packages.get_active(now=now)]

    def record_usage(self, customer_package_id: str, pet_id: str,
                     service_id: str, notes: Optional[str] = None,
                     now: Optional[datetime] = None) -> Dict[str, Any]:
        """记录一次套餐使用，返回使用记录字典。"""
        usage = self.usages.record(
            {
                "customer_package_id": customer_package_id,
                "pet_id": pet_id,
                "service_id": service_id,
                "notes": notes,
            },
            now=now,
        )
        return usage.to_dict()

    def renew_package(self, customer_package_id: str,
                      now: Optional[datetime] = None) -> Dict[str, Any]:
        """续费套餐，返回新套餐字典。"""
        return self.packages.renew(customer_package_id, now=now).to_dict()

    def expire_overdue_packages(self, now: Optional[datetime] = None) -> int:
        """过期清理，返回标记为 expired 的套餐数量。"""
        return self.packages.expire_overdue(now=now)

    def get_customer_overview(self, customer_id: str) -> Dict[str, Any]:
        """获取顾客概览：基本信息、宠物和套餐（含续费来源与使用次数）。

        Raises:
            NotFoundError: 顾客不存在。
        """
        unknown = business_config.get_unknown_package_label()
        with self.get_session() as sess:
            customer = self.customers.get(customer_id, session=sess)
            pets = self.pets.list_by_customer(customer_id, session=sess)
            packages = self.packages.list_by_customer(customer_id, session=sess)

            package_rows = []
            for package in packages:
                package_type = sess.get(PackageType, package.package_type_id)
                usages = self.usages.list_by_package(package.id, session=sess)
                package_rows.append({
                    **package.to_dict(),
                    "package_type_name": (
                        package_type.name if package_type else unknown
                    ),
                    "total_uses": package_type.total_uses if package_type else None,
                    "usage_count": len(usages),
                    "last_used_at": usages[0].used_at if usages else None,
                })

            return {
                **customer.to_dict(),
                "pets": [pet.to_dict() for pet in pets],
                "packages": package_rows,
            }

    def get_renewal_chain(self, customer_package_id: str
                          ) -> List[Dict[str, Any]]:
        """获取套餐的续费链（最早的在前）。"""
        return [
            p.to_dict()
            for p in self.packages.get_renewal_chain(customer_package_id)
        ]

    def count_packages(self, status: Optional[str] = None) -> int:
        """按状态统计套餐数量（不传状态则统计全部）。"""
        filters = {"status": status} if status else None
        return self.packages.count(CustomerPackage, filters=filters)
