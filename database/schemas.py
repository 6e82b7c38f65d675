"""输入数据校验模型（pydantic）。

仓库的创建/更新方法接收普通字典，先经由 ``validate()`` 转为
对应的 pydantic 模型，格式不符时抛出 ValidationFailure（含字段级详情）。
更新类模型的字段全部可选，只应用调用方显式传入的字段。
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ValidationFailure

SchemaT = TypeVar("SchemaT", bound=BaseModel)

Role = Literal["owner", "manager", "employee"]
Species = Literal["dog", "cat", "bird", "rabbit", "other"]
AppointmentStatus = Literal[
    "scheduled", "confirmed", "checked_in", "in_service",
    "ready", "picked_up", "canceled",
]
NotificationType = Literal["confirmation", "check_in", "ready", "reminder"]
NotificationChannel = Literal["whatsapp", "email"]


def validate(schema: Type[SchemaT], data: Any) -> SchemaT:
    """校验输入数据，失败时转换为 ValidationFailure。"""
    if isinstance(data, schema):
        return data
    try:
        return schema.model_validate(data or {})
    except ValidationError as exc:
        raise ValidationFailure.from_pydantic(exc, schema.__name__) from exc


def changes(model: BaseModel) -> Dict[str, Any]:
    """更新模型中调用方显式传入的字段。"""
    return model.model_dump(exclude_unset=True)


class _NonBlankName(BaseModel):
    name: str = Field(min_length=1, max_length=100)

    @field_validator("name")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


# ========== 公司 / 用户 ==========

class CompanyCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    logo: Optional[str] = None


class UserCreate(_NonBlankName):
    email: str = Field(min_length=3, max_length=200)
    password: str = Field(min_length=6)
    role: Role = "employee"

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        if "@" not in value:
            raise ValueError("must be a valid email address")
        return value.strip().lower()


# ========== 顾客 / 宠物 ==========

class CustomerCreate(_NonBlankName):
    phone: str = Field(min_length=1, max_length=30)
    email: Optional[str] = None
    notes: Optional[str] = None
    address: Optional[str] = None
    cep: Optional[str] = Field(default=None, max_length=9)
    city: Optional[str] = None
    state: Optional[str] = None
    neighborhood: Optional[str] = None
    complement: Optional[str] = None


class CustomerUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    phone: Optional[str] = Field(default=None, min_length=1, max_length=30)
    email: Optional[str] = None
    notes: Optional[str] = None
    address: Optional[str] = None
    cep: Optional[str] = Field(default=None, max_length=9)
    city: Optional[str] = None
    state: Optional[str] = None
    neighborhood: Optional[str] = None
    complement: Optional[str] = None


class PetCreate(_NonBlankName):
    customer_id: str
    species: Species
    breed: Optional[str] = None
    weight: Optional[Decimal] = Field(default=None, ge=0)
    birth_date: Optional[date] = None
    gender: Optional[Literal["male", "female"]] = None
    color: Optional[str] = None
    special_needs: Optional[str] = None
    preferred_food: Optional[str] = None
    notes: Optional[str] = None
    image_url: Optional[str] = None


class PetUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    species: Optional[Species] = None
    breed: Optional[str] = None
    weight: Optional[Decimal] = Field(default=None, ge=0)
    birth_date: Optional[date] = None
    gender: Optional[Literal["male", "female"]] = None
    color: Optional[str] = None
    special_needs: Optional[str] = None
    preferred_food: Optional[str] = None
    notes: Optional[str] = None
    image_url: Optional[str] = None


# ========== 服务 / 套餐类型 ==========

class ServiceCreate(_NonBlankName):
    description: Optional[str] = None
    base_price: Optional[Decimal] = Field(default=None, ge=0)
    duration: Optional[int] = Field(default=None, gt=0)


class ServiceUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None
    base_price: Optional[Decimal] = Field(default=None, ge=0)
    duration: Optional[int] = Field(default=None, gt=0)
    active: Optional[bool] = None


class IncludedService(BaseModel):
    service_id: str
    included_uses: int = Field(default=1, ge=1)
    unit_price: Decimal = Field(ge=0)


class PackageTypeCreate(_NonBlankName):
    description: Optional[str] = None
    validity_days: int = Field(gt=0)
    total_uses: int = Field(ge=1)
    price: Decimal = Field(ge=0)
    max_pets: int = Field(default=1, ge=1)
    services: List[IncludedService] = Field(default_factory=list)


class PackageTypeUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None
    validity_days: Optional[int] = Field(default=None, gt=0)
    total_uses: Optional[int] = Field(default=None, ge=1)
    price: Optional[Decimal] = Field(default=None, ge=0)
    max_pets: Optional[int] = Field(default=None, ge=1)
    active: Optional[bool] = None


# ========== 套餐台账 ==========

class PackagePurchase(BaseModel):
    customer_id: str
    package_type_id: str
    # 购买（生效）时间，缺省为当前时间；允许补录以前售出的套餐
    acquired_at: Optional[datetime] = None


class UsageCreate(BaseModel):
    customer_package_id: str
    pet_id: str
    service_id: str
    notes: Optional[str] = None


# ========== 预约 / 通知 ==========

class AppointmentCreate(BaseModel):
    customer_id: str
    pet_id: str
    service_id: str
    scheduled_date: datetime
    status: AppointmentStatus = "scheduled"
    notes: Optional[str] = None


class AppointmentUpdate(BaseModel):
    scheduled_date: Optional[datetime] = None
    status: Optional[AppointmentStatus] = None
    notes: Optional[str] = None


class NotificationCreate(BaseModel):
    customer_id: str
    type: NotificationType
    message: str = Field(min_length=1)
    channel: NotificationChannel
    meta: Optional[Dict[str, Any]] = None
