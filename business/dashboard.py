"""仪表盘 —— 基于套餐台账的只读统计。

- MetricsAggregator：头部指标（有效套餐数、本月续费、流失率、风险客户）
- ActionQueueBuilder：需要主动联系的客户列表（按优先级排序）
- RevenueAggregator：按套餐类型汇总收入
- RecentActivityFeed：最近的套餐使用动态
- PackageAnalyticsAggregator：各套餐类型的客户数、收入与使用率
- Dashboard：以上组件的组合

每次调用都从数据库重新计算，不做缓存。所有组件继承 BaseCRUD，
查询经过统一的租户过滤。错误处理策略：
头部指标出错时返回全零快照，收入和最近动态出错时返回空列表，
套餐分析出错时返回空结果，
行动队列出错时抛出 PersistenceFailure。
"""
import math
from dataclasses import dataclass, asdict, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from config.business_config import business_config, BusinessConfig
from config.settings import settings
from database.base_crud import BaseCRUD
from database.errors import PersistenceFailure
from database.manager import DatabaseManager
from database.models import (
    Customer, Pet, Service, PackageType, CustomerPackage, PackageUsage,
    PACKAGE_ACTIVE, PACKAGE_EXPIRED, to_naive_utc
)

PRIORITY_RANK = {"high": 3, "medium": 2, "low": 1}

# 没有使用记录时的"距上次使用天数"
NEVER_USED_DAYS = 999

SECONDS_PER_DAY = 24 * 60 * 60


@dataclass
class DashboardMetrics:
    """仪表盘头部指标。

    Attributes:
        active_packages: status == active 的套餐数（不考虑有效期和剩余次数）。
        renewals_this_month: 本月购买（含续费）且仍为 active 的套餐数。
        churn_rate: expired 套餐占全部套餐的百分比，保留一位小数。
        risky_clients: active 且有效期在风险窗口内的套餐数。
        status_active_count: 同 active_packages。
        operationally_active_count: 满足"可用"判定的套餐数。
    """
    active_packages: int = 0
    renewals_this_month: int = 0
    churn_rate: float = 0.0
    risky_clients: int = 0
    status_active_count: int = 0
    operationally_active_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ActionItem:
    """行动队列中的一项（对应一个套餐）。"""
    id: str
    customer_id: str
    customer_name: str
    pet_name: str
    pet_breed: str
    pet_image: str
    package_id: str
    priority: str
    reason: str
    remaining_uses: int
    expires_in: Optional[int] = None
    last_used_days: Optional[int] = None

    @property
    def rank(self) -> int:
        return PRIORITY_RANK[self.priority]

    def to_dict(self) -> Dict[str, Any]:
        """转为字典，省略未填充的数值字段。"""
        return {key: value for key, value in asdict(self).items() if value is not None}


@dataclass
class RevenueItem:
    """按套餐类型汇总的收入。"""
    name: str
    revenue: float
    color: str
    packages: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PackageTypeAnalytics:
    """单个套餐类型的分析数据。

    Attributes:
        active_clients: 持有该类型 active 套餐的顾客数。
        total_revenue: 该类型 active 套餐的购买价格合计。
        average_usage: 已用次数 / 总次数 × 100，四舍五入。
    """
    id: str
    name: str
    price: float
    active_clients: int
    total_revenue: float
    average_usage: int


@dataclass
class ServiceUsageShare:
    """常用服务：使用次数及其占全部使用记录的百分比。"""
    service_name: str
    usage_count: int
    percentage: int


@dataclass
class PackageAnalytics:
    """套餐分析结果。"""
    package_types: List[PackageTypeAnalytics] = field(default_factory=list)
    most_used_services: List[ServiceUsageShare] = field(default_factory=list)
    total_active_packages: int = 0
    total_active_clients: int = 0
    average_package_utilization: int = 0
    monthly_recurring_revenue: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "package_types": [asdict(item) for item in self.package_types],
            "most_used_services": [asdict(item) for item in self.most_used_services],
            "overall_stats": {
                "total_active_packages": self.total_active_packages,
                "total_active_clients": self.total_active_clients,
                "average_package_utilization": self.average_package_utilization,
                "monthly_recurring_revenue": self.monthly_recurring_revenue,
            },
        }


def utf16_code_sum(text: str) -> int:
    """按 UTF-16 代码单元求和（BMP 以外的字符计为两个代理项）。"""
    data = text.encode("utf-16-le")
    return sum(
        int.from_bytes(data[i:i + 2], "little") for i in range(0, len(data), 2)
    )


def color_for(name: str, config: Optional[BusinessConfig] = None) -> str:
    """为收入图表中的名称分配固定颜色。

    先查固定颜色表，未命中时按字符编码之和对调色板取模。
    """
    config = config or business_config
    colors = config.get_revenue_colors()
    if name in colors:
        return colors[name]
    palette = config.get_fallback_palette()
    return palette[utf16_code_sum(name) % len(palette)]


def format_time_ago(moment: datetime, now: datetime) -> str:
    """将时间格式化为相对描述（分钟 / 小时 / 天）。"""
    hours = math.floor((now - moment).total_seconds() / 3600)
    if hours < 1:
        return "a few minutes ago"
    if hours < 24:
        return f"{hours} hour{'s' if hours > 1 else ''} ago"
    days = hours // 24
    return f"{days} day{'s' if days > 1 else ''} ago"


class MetricsAggregator(BaseCRUD):
    """头部指标计算。"""

    def __init__(self, conn, company_id: Optional[str] = None,
                 risk_window_days: Optional[int] = None) -> None:
        super().__init__(conn, company_id)
        self.risk_window_days = (
            settings.risk_window_days if risk_window_days is None
            else risk_window_days
        )

    def compute(self, now: Optional[datetime] = None) -> DashboardMetrics:
        """计算头部指标，任何错误都返回全零快照。"""
        current = to_naive_utc(now)
        month_start = current.replace(
            day=1, hour=0, minute=0, second=0, microsecond=0
        )
        risk_date = current + timedelta(days=self.risk_window_days)

        try:
            with self._get_session() as sess:
                def _count(*conditions):
                    return self._query(sess, CustomerPackage).filter(
                        *conditions
                    ).count()

                status_active = _count(CustomerPackage.status == PACKAGE_ACTIVE)
                renewals = _count(
                    CustomerPackage.status == PACKAGE_ACTIVE,
                    CustomerPackage.acquired_at >= month_start,
                )
                total = _count()
                expired = _count(CustomerPackage.status == PACKAGE_EXPIRED)
                risky = _count(
                    CustomerPackage.status == PACKAGE_ACTIVE,
                    CustomerPackage.valid_until <= risk_date,
                )
                operational = _count(
                    CustomerPackage.status == PACKAGE_ACTIVE,
                    CustomerPackage.valid_until >= current,
                    CustomerPackage.remaining_uses >= 1,
                )
        except Exception:
            logger.exception("Dashboard metrics failed, returning zeros")
            return DashboardMetrics()

        churn_rate = round(expired / total * 100, 1) if total > 0 else 0.0
        metrics = DashboardMetrics(
            active_packages=status_active,
            renewals_this_month=renewals,
            churn_rate=churn_rate,
            risky_clients=risky,
            status_active_count=status_active,
            operationally_active_count=operational,
        )
        logger.debug(f"Dashboard metrics: {metrics}")
        return metrics


class ActionQueueBuilder(BaseCRUD):
    """行动队列构建。

    对每个可用套餐依次匹配规则（先匹配者生效）：
    1. 距到期 <= expiry_alert_days 天 -> high
    2. 剩余次数 <= low_balance_uses -> medium
    3. 距上次使用 >= inactivity_days 天 -> low
    都不满足则不生成条目。顾客没有宠物时跳过该套餐。
    结果按优先级稳定降序排序，同级保持套餐的购买顺序。
    """

    def __init__(self, conn, company_id: Optional[str] = None,
                 expiry_alert_days: Optional[int] = None,
                 low_balance_uses: Optional[int] = None,
                 inactivity_days: Optional[int] = None,
                 config: Optional[BusinessConfig] = None) -> None:
        super().__init__(conn, company_id)
        self.expiry_alert_days = (
            settings.expiry_alert_days if expiry_alert_days is None
            else expiry_alert_days
        )
        self.low_balance_uses = (
            settings.low_balance_uses if low_balance_uses is None
            else low_balance_uses
        )
        self.inactivity_days = (
            settings.inactivity_days if inactivity_days is None
            else inactivity_days
        )
        self.config = config or business_config

    def _pet_image(self, species: str) -> str:
        images = self.config.get_pet_images()
        return images.get(species, images["dog"])

    def _classify(self, days_till_expiry: int, remaining_uses: int,
                  days_since_last_use: int):
        templates = self.config.get_reason_templates()
        if days_till_expiry <= self.expiry_alert_days:
            return "high", templates["high"].format(days=days_till_expiry)
        if remaining_uses <= self.low_balance_uses:
            return "medium", templates["medium"].format(uses=remaining_uses)
        if days_since_last_use >= self.inactivity_days:
            return "low", templates["low"].format(days=days_since_last_use)
        return None, None

    def build(self, now: Optional[datetime] = None) -> List[ActionItem]:
        """构建行动队列。

        Raises:
            PersistenceFailure: 查询出错。
        """
        current = to_naive_utc(now)
        try:
            with self._get_session() as sess:
                packages = self._query(sess, CustomerPackage).filter(
                    CustomerPackage.status == PACKAGE_ACTIVE,
                    CustomerPackage.valid_until >= current,
                    CustomerPackage.remaining_uses >= 1,
                ).order_by(
                    CustomerPackage.acquired_at, CustomerPackage.id
                ).all()
                if not packages:
                    return []

                customer_ids = {p.customer_id for p in packages}
                customers = {
                    c.id: c for c in self._query(sess, Customer).filter(
                        Customer.id.in_(customer_ids)
                    ).all()
                }

                first_pets = {}
                for pet in self._query(sess, Pet).filter(
                    Pet.customer_id.in_(customer_ids)
                ).order_by(Pet.created_at, Pet.id).all():
                    first_pets.setdefault(pet.customer_id, pet)

                last_used = dict(
                    self._scope(
                        sess.query(
                            PackageUsage.customer_package_id,
                            func.max(PackageUsage.used_at),
                        ),
                        PackageUsage,
                    ).filter(
                        PackageUsage.customer_package_id.in_(
                            [p.id for p in packages]
                        )
                    ).group_by(PackageUsage.customer_package_id).all()
                )
        except SQLAlchemyError as exc:
            logger.exception("Action queue query failed")
            raise PersistenceFailure("Action queue query failed") from exc

        items = []
        for package in packages:
            customer = customers.get(package.customer_id)
            pet = first_pets.get(package.customer_id)
            if customer is None or pet is None:
                continue

            days_till_expiry = math.ceil(
                (package.valid_until - current).total_seconds() / SECONDS_PER_DAY
            )
            last_use = last_used.get(package.id)
            days_since_last_use = (
                math.floor((current - last_use).total_seconds() / SECONDS_PER_DAY)
                if last_use else NEVER_USED_DAYS
            )

            priority, reason = self._classify(
                days_till_expiry, package.remaining_uses, days_since_last_use
            )
            if priority is None:
                continue

            items.append(ActionItem(
                id=package.id,
                customer_id=customer.id,
                customer_name=customer.name,
                pet_name=pet.name,
                pet_breed=pet.breed or pet.species,
                pet_image=self._pet_image(pet.species),
                package_id=package.id,
                priority=priority,
                reason=reason,
                remaining_uses=package.remaining_uses,
                expires_in=days_till_expiry if days_till_expiry > 0 else None,
                last_used_days=(
                    days_since_last_use
                    if days_since_last_use < NEVER_USED_DAYS else None
                ),
            ))

        # sorted 是稳定排序，同级条目保持原有顺序
        return sorted(items, key=lambda item: item.rank, reverse=True)


class RevenueAggregator(BaseCRUD):
    """按套餐类型汇总 active 套餐的收入。"""

    def __init__(self, conn, company_id: Optional[str] = None,
                 config: Optional[BusinessConfig] = None) -> None:
        super().__init__(conn, company_id)
        self.config = config or business_config

    def compute(self) -> List[RevenueItem]:
        """计算各套餐类型的收入，按收入降序；出错时返回空列表。"""
        unknown = self.config.get_unknown_package_label()
        try:
            with self._get_session() as sess:
                query = sess.query(
                    PackageType.name, CustomerPackage.purchase_price
                ).select_from(CustomerPackage).outerjoin(
                    PackageType,
                    CustomerPackage.package_type_id == PackageType.id,
                )
                rows = self._scope(query, CustomerPackage).filter(
                    CustomerPackage.status == PACKAGE_ACTIVE
                ).order_by(
                    CustomerPackage.acquired_at, CustomerPackage.id
                ).all()
        except Exception:
            logger.exception("Revenue aggregation failed")
            return []

        grouped: Dict[str, Dict[str, Any]] = {}
        for type_name, price in rows:
            name = type_name or unknown
            entry = grouped.setdefault(name, {"revenue": 0.0, "count": 0})
            entry["revenue"] += float(price or 0)
            entry["count"] += 1

        items = [
            RevenueItem(
                name=name,
                revenue=round(entry["revenue"], 2),
                color=color_for(name, self.config),
                packages=entry["count"],
            )
            for name, entry in grouped.items()
        ]
        return sorted(items, key=lambda item: item.revenue, reverse=True)


class RecentActivityFeed(BaseCRUD):
    """最近的套餐使用动态。"""

    def __init__(self, conn, company_id: Optional[str] = None,
                 limit: Optional[int] = None) -> None:
        super().__init__(conn, company_id)
        self.limit = settings.recent_activity_limit if limit is None else limit

    def compute(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """最近 N 条使用记录；关联记录缺失的条目跳过，出错时返回空列表。"""
        current = to_naive_utc(now)
        try:
            with self._get_session() as sess:
                query = sess.query(
                    PackageUsage, Customer, Pet, Service
                ).select_from(PackageUsage).outerjoin(
                    CustomerPackage,
                    PackageUsage.customer_package_id == CustomerPackage.id,
                ).outerjoin(
                    Customer, CustomerPackage.customer_id == Customer.id
                ).outerjoin(
                    Pet, PackageUsage.pet_id == Pet.id
                ).outerjoin(
                    Service, PackageUsage.service_id == Service.id
                )
                rows = self._scope(query, PackageUsage).order_by(
                    PackageUsage.used_at.desc()
                ).limit(self.limit).all()
        except Exception:
            logger.exception("Recent activity query failed")
            return []

        activities = []
        for usage, customer, pet, service in rows:
            if customer is None or pet is None or service is None or usage.used_at is None:
                continue
            activities.append({
                "type": "package_used",
                "title": "Package used",
                "customer_name": customer.name,
                "description": f"{pet.name} ({pet.breed or pet.species})",
                "details": f"{service.name} • {format_time_ago(usage.used_at, current)}",
                "icon": "check",
                "color": "green",
                "used_at": usage.used_at,
            })
        return activities


class PackageAnalyticsAggregator(BaseCRUD):
    """套餐分析：按在售套餐类型统计 active 套餐的客户数、收入与使用率。

    使用率 = (套餐类型总次数 - 剩余次数) 之和 / 总次数之和 × 100。
    整体统计中的 active 套餐数和客户数包含已停售类型的套餐。
    """

    def __init__(self, conn, company_id: Optional[str] = None,
                 top_services: Optional[int] = None) -> None:
        super().__init__(conn, company_id)
        self.top_services = (
            settings.analytics_top_services if top_services is None
            else top_services
        )

    def compute(self) -> PackageAnalytics:
        """计算套餐分析；出错时返回空结果。"""
        try:
            with self._get_session() as sess:
                package_types = self._query(sess, PackageType).filter(
                    PackageType.active.is_(True)
                ).order_by(PackageType.name, PackageType.id).all()
                active_packages = self._query(sess, CustomerPackage).filter(
                    CustomerPackage.status == PACKAGE_ACTIVE
                ).all()
                usage_counts = self._scope(
                    sess.query(
                        Service.name, func.count(PackageUsage.id)
                    ).select_from(PackageUsage).join(
                        Service, PackageUsage.service_id == Service.id
                    ),
                    PackageUsage,
                ).group_by(Service.id, Service.name).all()
        except Exception:
            logger.exception("Package analytics failed")
            return PackageAnalytics()

        by_type: Dict[str, List[CustomerPackage]] = {}
        for package in active_packages:
            by_type.setdefault(package.package_type_id, []).append(package)

        type_items = []
        for package_type in package_types:
            packages = by_type.get(package_type.id, [])
            possible = package_type.total_uses * len(packages)
            used = sum(
                max(package_type.total_uses - p.remaining_uses, 0) for p in packages
            )
            type_items.append(PackageTypeAnalytics(
                id=package_type.id,
                name=package_type.name,
                price=float(package_type.price),
                active_clients=len({p.customer_id for p in packages}),
                total_revenue=round(sum(float(p.purchase_price or 0) for p in packages), 2),
                average_usage=round(used / possible * 100) if possible else 0,
            ))

        total_usages = sum(count for _, count in usage_counts)
        services = [
            ServiceUsageShare(
                service_name=name,
                usage_count=count,
                percentage=round(count / total_usages * 100),
            )
            for name, count in sorted(usage_counts, key=lambda row: (-row[1], row[0]))
        ][:self.top_services]

        analytics = PackageAnalytics(
            package_types=type_items,
            most_used_services=services,
            total_active_packages=len(active_packages),
            total_active_clients=len({p.customer_id for p in active_packages}),
            average_package_utilization=(
                round(sum(t.average_usage for t in type_items) / len(type_items))
                if type_items else 0
            ),
            monthly_recurring_revenue=round(
                sum(t.total_revenue for t in type_items), 2
            ),
        )
        logger.debug(
            f"Package analytics: {len(type_items)} type(s), "
            f"{analytics.total_active_packages} active package(s)"
        )
        return analytics


@dataclass
class Dashboard:
    """仪表盘组件组合，绑定到一个（租户范围的）DatabaseManager。"""
    db: DatabaseManager
    metrics_aggregator: MetricsAggregator = field(init=False)
    action_queue_builder: ActionQueueBuilder = field(init=False)
    revenue_aggregator: RevenueAggregator = field(init=False)
    activity_feed: RecentActivityFeed = field(init=False)
    package_analytics_aggregator: PackageAnalyticsAggregator = field(init=False)

    def __post_init__(self) -> None:
        conn, company_id = self.db.conn, self.db.company_id
        self.metrics_aggregator = MetricsAggregator(conn, company_id)
        self.action_queue_builder = ActionQueueBuilder(conn, company_id)
        self.revenue_aggregator = RevenueAggregator(conn, company_id)
        self.activity_feed = RecentActivityFeed(conn, company_id)
        self.package_analytics_aggregator = PackageAnalyticsAggregator(conn, company_id)

    def metrics(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        return self.metrics_aggregator.compute(now).to_dict()

    def action_queue(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        return [item.to_dict() for item in self.action_queue_builder.build(now)]

    def revenue_by_service(self) -> List[Dict[str, Any]]:
        return [item.to_dict() for item in self.revenue_aggregator.compute()]

    def recent_activity(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        return self.activity_feed.compute(now)

    def package_analytics(self) -> Dict[str, Any]:
        return self.package_analytics_aggregator.compute().to_dict()
