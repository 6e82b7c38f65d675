"""SQLAlchemy ORM 模型定义。

本模块定义了所有数据库表的ORM模型，包括：
- 租户与账号：公司、操作员
- 顾客与宠物
- 服务目录、套餐类型及其包含的服务
- 套餐台账：顾客套餐、分服务计数、使用记录
- 预约与通知
"""
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Column, Integer, String, Text, Boolean, Date, DateTime,
    DECIMAL, ForeignKey, JSON, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship


# ========== 状态取值 ==========

PACKAGE_ACTIVE = "active"
PACKAGE_CONSUMED = "consumed"
PACKAGE_EXPIRED = "expired"
PACKAGE_RENEWED = "renewed"
PACKAGE_STATUSES = (PACKAGE_ACTIVE, PACKAGE_CONSUMED, PACKAGE_EXPIRED, PACKAGE_RENEWED)

APPOINTMENT_STATUSES = (
    "scheduled", "confirmed", "checked_in", "in_service",
    "ready", "picked_up", "canceled",
)

NOTIFICATION_STATUSES = ("pending", "sent", "failed")
NOTIFICATION_CHANNELS = ("whatsapp", "email")
NOTIFICATION_TYPES = ("confirmation", "check_in", "ready", "reminder")

USER_ROLES = ("owner", "manager", "employee")


def utcnow() -> datetime:
    """当前UTC时间（不带时区信息，与数据库中存储的时间一致）。"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> datetime:
    """将时间统一为不带时区的UTC时间；None 表示当前时间。"""
    if value is None:
        return utcnow()
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def new_id() -> str:
    """生成随机UUID主键。"""
    return str(uuid.uuid4())


class _DictMixin:
    """为模型提供 to_dict()，金额字段转为 float。"""

    _hidden_fields: tuple = ()

    def to_dict(self) -> Dict[str, Any]:
        result = {}
        for column in self.__table__.columns:
            key = column.key
            if key in self._hidden_fields:
                continue
            value = getattr(self, key)
            if isinstance(value, Decimal):
                value = float(value)
            result[key] = value
        return result


# SQLAlchemy declarative base，所有模型都继承自此类
Base = declarative_base(cls=_DictMixin)

# 允许使用旧式类型注解
Base.__allow_unmapped__ = True


class Company(Base):
    """公司（租户）表模型。

    租户边界：所有操作员、顾客、服务、套餐类型都属于且仅属于一个公司。

    Attributes:
        id: 主键，UUID字符串。
        name: 公司名称，必填。
        email: 联系邮箱，唯一。
        phone / address / logo: 联系信息，可选。
        is_active: 是否启用，默认True。
        created_at: 创建时间。
    """
    __tablename__ = "companies"
    __tenant_owner__ = "self"

    id: str = Column(String(36), primary_key=True, default=new_id)
    name: str = Column(String(200), nullable=False)
    email: Optional[str] = Column(String(200), unique=True)
    phone: Optional[str] = Column(String(30))
    address: Optional[str] = Column(Text)
    logo: Optional[str] = Column(Text)
    is_active: bool = Column(Boolean, default=True)
    created_at: datetime = Column(DateTime, default=utcnow)

    # Relationships
    users: List["User"] = relationship("User", back_populates="company")
    customers: List["Customer"] = relationship("Customer", back_populates="company")
    services: List["Service"] = relationship("Service", back_populates="company")
    package_types: List["PackageType"] = relationship("PackageType", back_populates="company")


class User(Base):
    """操作员账号表模型。

    Attributes:
        id: 主键。
        company_id: 所属公司。
        email: 登录邮箱，同一公司内唯一。
        password_hash: bcrypt 哈希后的密码（列名 password）。
        name: 姓名。
        role: 角色，可选值：owner / manager / employee，默认employee。
        is_active: 是否启用。
        last_login_at: 最近登录时间。
    """
    __tablename__ = "users"
    __tenant_owner__ = "company"
    __table_args__ = (
        UniqueConstraint("email", "company_id", name="uq_user_email_company"),
    )
    _hidden_fields = ("password_hash",)

    id: str = Column(String(36), primary_key=True, default=new_id)
    company_id: str = Column(String(36), ForeignKey("companies.id"), nullable=False)
    email: str = Column(String(200), nullable=False)
    password_hash: str = Column("password", String(200), nullable=False)
    name: str = Column(String(100), nullable=False)
    role: str = Column(String(20), nullable=False, default="employee")  # owner / manager / employee
    is_active: bool = Column(Boolean, default=True)
    last_login_at: Optional[datetime] = Column(DateTime)
    created_at: datetime = Column(DateTime, default=utcnow)
    updated_at: datetime = Column(DateTime, default=utcnow, onupdate=utcnow)

    company: "Company" = relationship("Company", back_populates="users")


class Customer(Base):
    """顾客（宠物主人）表模型。

    Attributes:
        id: 主键。
        company_id: 所属公司。
        name: 姓名，必填。
        phone: 电话，必填。
        email / notes: 可选。
        address, cep, city, state, neighborhood, complement: 接送服务用的完整地址。
    """
    __tablename__ = "customers"
    __tenant_owner__ = "company"

    id: str = Column(String(36), primary_key=True, default=new_id)
    company_id: str = Column(String(36), ForeignKey("companies.id"), nullable=False)
    name: str = Column(String(100), nullable=False)
    phone: str = Column(String(30), nullable=False)
    email: Optional[str] = Column(String(200))
    notes: Optional[str] = Column(Text)
    address: Optional[str] = Column(Text)
    cep: Optional[str] = Column(String(9))
    city: Optional[str] = Column(String(100))
    state: Optional[str] = Column(String(50))
    neighborhood: Optional[str] = Column(String(100))
    complement: Optional[str] = Column(String(200))
    created_at: datetime = Column(DateTime, default=utcnow)

    # Relationships
    company: "Company" = relationship("Company", back_populates="customers")
    pets: List["Pet"] = relationship(
        "Pet", back_populates="customer", cascade="all, delete-orphan",
        order_by="Pet.created_at"
    )
    packages: List["CustomerPackage"] = relationship("CustomerPackage", back_populates="customer")
    appointments: List["Appointment"] = relationship(
        "Appointment", back_populates="customer", cascade="all, delete-orphan"
    )
    notifications: List["Notification"] = relationship(
        "Notification", back_populates="customer", cascade="all, delete-orphan"
    )


class Pet(Base):
    """宠物表模型。

    Attributes:
        species: 物种，必填（dog / cat / bird / rabbit / other）。
        breed: 品种。
        weight: 体重，DECIMAL(5,2)。
        birth_date / gender / color: 基础信息。
        special_needs: 特殊护理需求。
        preferred_food: 偏好的粮食品牌/类型。
    """
    __tablename__ = "pets"
    __tenant_owner__ = "customer"

    id: str = Column(String(36), primary_key=True, default=new_id)
    customer_id: str = Column(String(36), ForeignKey("customers.id"), nullable=False)
    name: str = Column(String(100), nullable=False)
    species: str = Column(String(20), nullable=False)  # dog / cat / bird / rabbit / other
    breed: Optional[str] = Column(String(100))
    weight: Optional[Decimal] = Column(DECIMAL(5, 2))
    birth_date: Optional[date] = Column(Date)
    gender: Optional[str] = Column(String(10))  # male / female
    color: Optional[str] = Column(String(50))
    special_needs: Optional[str] = Column(Text)
    preferred_food: Optional[str] = Column(Text)
    notes: Optional[str] = Column(Text)
    image_url: Optional[str] = Column(Text)
    created_at: datetime = Column(DateTime, default=utcnow)
    updated_at: datetime = Column(DateTime, default=utcnow, onupdate=utcnow)

    customer: "Customer" = relationship("Customer", back_populates="pets")


class Service(Base):
    """服务目录表模型（洗澡、美容、剪指甲等）。

    服务只做软下架（active=False），不物理删除。
    """
    __tablename__ = "services"
    __tenant_owner__ = "company"

    id: str = Column(String(36), primary_key=True, default=new_id)
    company_id: str = Column(String(36), ForeignKey("companies.id"), nullable=False)
    name: str = Column(String(100), nullable=False)
    description: Optional[str] = Column(Text)
    base_price: Optional[Decimal] = Column(DECIMAL(10, 2))
    duration: Optional[int] = Column(Integer)  # 分钟
    active: bool = Column(Boolean, default=True)

    company: "Company" = relationship("Company", back_populates="services")


class PackageType(Base):
    """套餐类型（预付套餐模板）表模型。

    Attributes:
        validity_days: 有效天数。
        total_uses: 所有包含服务合计的可用次数。
        price: 套餐总价。
        max_pets: 可使用该套餐的宠物数上限，默认1。
        active: 是否在售（软删除标记）。

    Relationships:
        services: 包含的服务明细（PackageTypeService）。
    """
    __tablename__ = "package_types"
    __tenant_owner__ = "company"

    id: str = Column(String(36), primary_key=True, default=new_id)
    company_id: str = Column(String(36), ForeignKey("companies.id"), nullable=False)
    name: str = Column(String(100), nullable=False)
    description: Optional[str] = Column(Text)
    validity_days: int = Column(Integer, nullable=False)
    total_uses: int = Column(Integer, nullable=False)
    price: Decimal = Column(DECIMAL(10, 2), nullable=False)
    max_pets: int = Column(Integer, default=1)
    active: bool = Column(Boolean, default=True)

    company: "Company" = relationship("Company", back_populates="package_types")
    services: List["PackageTypeService"] = relationship(
        "PackageTypeService", back_populates="package_type", cascade="all, delete-orphan"
    )


class PackageTypeService(Base):
    """套餐类型与服务的多对多明细表模型。"""
    __tablename__ = "package_type_services"
    __tenant_owner__ = "package_type"

    id: str = Column(String(36), primary_key=True, default=new_id)
    package_type_id: str = Column(String(36), ForeignKey("package_types.id"), nullable=False)
    service_id: str = Column(String(36), ForeignKey("services.id"), nullable=False)
    included_uses: int = Column(Integer, default=1)
    unit_price: Decimal = Column(DECIMAL(10, 2), nullable=False)

    package_type: "PackageType" = relationship("PackageType", back_populates="services")
    service: "Service" = relationship("Service")


class CustomerPackage(Base):
    """顾客套餐表模型（套餐台账核心表）。

    remaining_uses 只会通过使用记录递减，或在购买/续费时从套餐类型重新拷贝，
    从不原地增加。

    Attributes:
        remaining_uses: 剩余可用次数（所有服务合计），>= 0。
        valid_until: 到期时间。
        status: active / consumed / expired / renewed。
        renewed_from_id: 续费来源套餐ID（续费链）。
        purchase_price: 购买价格。
        acquired_at: 购买时间。
    """
    __tablename__ = "customer_packages"
    __tenant_owner__ = "customer"

    id: str = Column(String(36), primary_key=True, default=new_id)
    customer_id: str = Column(String(36), ForeignKey("customers.id"), nullable=False)
    package_type_id: str = Column(String(36), ForeignKey("package_types.id"), nullable=False)
    remaining_uses: int = Column(Integer, nullable=False)
    valid_until: datetime = Column(DateTime, nullable=False)
    status: str = Column(String(20), nullable=False, default=PACKAGE_ACTIVE)
    renewed_from_id: Optional[str] = Column(String(36), ForeignKey("customer_packages.id"))
    purchase_price: Decimal = Column(DECIMAL(10, 2), nullable=False)
    acquired_at: datetime = Column(DateTime, default=utcnow)

    # Relationships
    customer: "Customer" = relationship("Customer", back_populates="packages")
    package_type: "PackageType" = relationship("PackageType")
    renewed_from: Optional["CustomerPackage"] = relationship(
        "CustomerPackage", remote_side=[id]
    )
    usages: List["PackageUsage"] = relationship("PackageUsage", back_populates="customer_package")
    service_balances: List["CustomerPackageService"] = relationship(
        "CustomerPackageService", back_populates="customer_package"
    )


class CustomerPackageService(Base):
    """顾客套餐的分服务计数表模型。

    与 PackageTypeService 在实例层面对应。目前使用记录只维护
    CustomerPackage.remaining_uses 汇总值，不维护此表。
    """
    __tablename__ = "customer_package_services"
    __tenant_owner__ = "customer_package"

    id: str = Column(String(36), primary_key=True, default=new_id)
    customer_package_id: str = Column(String(36), ForeignKey("customer_packages.id"), nullable=False)
    service_id: str = Column(String(36), ForeignKey("services.id"), nullable=False)
    remaining_uses: int = Column(Integer, nullable=False)
    total_uses: int = Column(Integer, nullable=False)

    customer_package: "CustomerPackage" = relationship(
        "CustomerPackage", back_populates="service_balances"
    )


class PackageUsage(Base):
    """套餐使用记录表模型（不可变事件，创建后不更新不删除）。"""
    __tablename__ = "package_usages"
    __tenant_owner__ = "customer_package"

    id: str = Column(String(36), primary_key=True, default=new_id)
    customer_package_id: str = Column(String(36), ForeignKey("customer_packages.id"), nullable=False)
    pet_id: str = Column(String(36), ForeignKey("pets.id"), nullable=False)
    service_id: str = Column(String(36), ForeignKey("services.id"), nullable=False)
    notes: Optional[str] = Column(Text)
    used_at: datetime = Column(DateTime, default=utcnow)

    customer_package: "CustomerPackage" = relationship("CustomerPackage", back_populates="usages")
    pet: "Pet" = relationship("Pet")
    service: "Service" = relationship("Service")


class Appointment(Base):
    """预约表模型。

    与套餐台账相互独立：预约不会自动扣减套餐次数。

    Attributes:
        scheduled_date: 预约时间。
        status: scheduled / confirmed / checked_in / in_service / ready /
            picked_up / canceled，默认scheduled。
    """
    __tablename__ = "appointments"
    __tenant_owner__ = "customer"

    id: str = Column(String(36), primary_key=True, default=new_id)
    customer_id: str = Column(String(36), ForeignKey("customers.id"), nullable=False)
    pet_id: str = Column(String(36), ForeignKey("pets.id"), nullable=False)
    service_id: str = Column(String(36), ForeignKey("services.id"), nullable=False)
    scheduled_date: datetime = Column(DateTime, nullable=False)
    status: str = Column(String(20), nullable=False, default="scheduled")
    notes: Optional[str] = Column(Text)
    created_at: datetime = Column(DateTime, default=utcnow)

    customer: "Customer" = relationship("Customer", back_populates="appointments")
    pet: "Pet" = relationship("Pet")
    service: "Service" = relationship("Service")


class Notification(Base):
    """通知记录表模型（实际发送为桩实现）。

    Attributes:
        type: confirmation / check_in / ready / reminder。
        channel: whatsapp / email。
        status: pending / sent / failed，默认pending。
        meta: 扩展数据（列名 metadata）。
    """
    __tablename__ = "notifications"
    __tenant_owner__ = "customer"

    id: str = Column(String(36), primary_key=True, default=new_id)
    customer_id: str = Column(String(36), ForeignKey("customers.id"), nullable=False)
    type: str = Column(String(20), nullable=False)
    message: str = Column(Text, nullable=False)
    channel: str = Column(String(20), nullable=False)
    status: str = Column(String(20), nullable=False, default="pending")
    meta: Optional[Dict[str, Any]] = Column("metadata", JSON)
    sent_at: Optional[datetime] = Column(DateTime)
    created_at: datetime = Column(DateTime, default=utcnow)

    customer: "Customer" = relationship("Customer", back_populates="notifications")
