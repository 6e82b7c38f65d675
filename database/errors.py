"""数据访问层异常定义。

- NotFoundError：引用的实体不存在（公司、用户、顾客、宠物、套餐类型、顾客套餐等）。
- ValidationFailure：输入数据格式不符或违反业务规则，携带字段级错误详情。
- PackageNotUsableError：套餐不满足"可用"条件（状态、有效期、剩余次数）。
- PersistenceFailure：数据库不可达或查询出错（台账写操作必须显式失败）。
"""
from typing import Any, Dict, List, Optional


class GroomingError(Exception):
    """所有业务异常的基类。"""


class NotFoundError(GroomingError, LookupError):
    """引用的实体不存在。

    Attributes:
        entity: 实体名称（如 "CustomerPackage"）。
        entity_id: 实体ID。
    """

    def __init__(self, entity: str, entity_id: Any) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class ValidationFailure(GroomingError, ValueError):
    """输入校验失败。

    Attributes:
        message: 错误描述。
        errors: 字段级错误列表，每项包含 ``field`` 和 ``message``。
    """

    def __init__(self, message: str,
                 errors: Optional[List[Dict[str, Any]]] = None) -> None:
        self.message = message
        self.errors = errors or []
        super().__init__(message)

    @classmethod
    def from_pydantic(cls, exc, model_name: str) -> "ValidationFailure":
        """由 pydantic.ValidationError 构造，保留字段级详情。"""
        errors = [
            {
                "field": ".".join(str(part) for part in err.get("loc", ())),
                "message": err.get("msg", ""),
            }
            for err in exc.errors()
        ]
        return cls(f"Invalid {model_name} data", errors)


class PackageNotUsableError(ValidationFailure):
    """套餐不可用（非 active、已过期或次数已用完）。"""

    def __init__(self, package_id: str, reason: str) -> None:
        self.package_id = package_id
        super().__init__(
            f"Package {package_id} is not usable: {reason}",
            [{"field": "customer_package_id", "message": reason}],
        )


class PersistenceFailure(GroomingError):
    """底层存储不可达或语句执行出错。"""
