"""实体仓库 —— 基础实体的数据访问层。

管理系统中的基础实体（公司、操作员、顾客、宠物、服务、套餐类型），
这些实体是套餐台账和预约的前提数据。

每个仓库继承 BaseCRUD 获得通用能力与租户隔离，并添加领域特定的查询方法。
"""
from typing import Optional, List, Dict, Any

import bcrypt
from loguru import logger
from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from .base_crud import BaseCRUD
from .connection import DatabaseConnection
from .errors import ValidationFailure
from .models import (
    Company, User, Customer, Pet, Service, PackageType, PackageTypeService,
    CustomerPackage, PackageUsage, Appointment, utcnow
)
from .schemas import (
    CompanyCreate, UserCreate, CustomerCreate, CustomerUpdate, PetCreate,
    PetUpdate, ServiceCreate, ServiceUpdate, PackageTypeCreate,
    PackageTypeUpdate, validate, changes
)

PASSWORD_HASH_ROUNDS = 12


def hash_password(password: str, rounds: Optional[int] = None) -> str:
    """使用 bcrypt 生成密码哈希（默认强度 PASSWORD_HASH_ROUNDS）。"""
    return bcrypt.hashpw(
        password.encode("utf-8"),
        bcrypt.gensalt(rounds=rounds or PASSWORD_HASH_ROUNDS)
    ).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """校验明文密码与 bcrypt 哈希是否匹配。"""
    try:
        return bcrypt.checkpw(
            password.encode("utf-8"), password_hash.encode("utf-8")
        )
    except ValueError:
        # 存储的哈希格式无效
        return False


class CompanyRepository(BaseCRUD):
    """公司（租户）仓库。"""

    def __init__(self, conn: DatabaseConnection,
                 company_id: Optional[str] = None) -> None:
        super().__init__(conn, company_id)

    def create(self, data: Dict[str, Any],
               session: Optional[Session] = None) -> Company:
        """创建公司。

        Args:
            data: 公司数据，详见 CompanyCreate。

        Returns:
            新创建的 Company 对象。
        """
        payload = validate(CompanyCreate, data)
        company = super().create(Company, session=session, **payload.model_dump())
        logger.info(f"Company created: {company.name} ({company.id})")
        return company

    def get(self, company_id: str,
            session: Optional[Session] = None) -> Company:
        """按ID获取公司，不存在抛出 NotFoundError。"""
        return self.require(Company, company_id, session=session)


class UserRepository(BaseCRUD):
    """操作员账号仓库。

    密码以 bcrypt 哈希存储，登录时通过 ``authenticate`` 校验。
    """

    def __init__(self, conn: DatabaseConnection,
                 company_id: Optional[str] = None) -> None:
        super().__init__(conn, company_id)

    def create(self, data: Dict[str, Any],
               company_id: Optional[str] = None,
               session: Optional[Session] = None) -> User:
        """创建操作员账号。

        Args:
            data: 用户数据，详见 UserCreate（password 为明文）。
            company_id: 未绑定租户时指定所属公司。

        Returns:
            新创建的 User 对象。

        Raises:
            ValidationFailure: 数据格式不符，或同一公司内邮箱已存在。
        """
        payload = validate(UserCreate, data)
        owner = self._owner_company(company_id or (data or {}).get("company_id"))

        def _do(sess):
            self.require(Company, owner, session=sess)
            exists = sess.query(User).filter(
                User.company_id == owner, User.email == payload.email
            ).first()
            if exists:
                raise ValidationFailure(
                    "Email already registered",
                    [{"field": "email", "message": "Email already registered"}],
                )
            user = User(
                company_id=owner,
                email=payload.email,
                name=payload.name,
                role=payload.role,
                password_hash=hash_password(payload.password),
            )
            sess.add(user)
            sess.flush()
            return user

        if session:
            return _do(session)

        with self._get_session() as sess:
            user = _do(sess)
            sess.commit()
        logger.info(f"User created: {user.email} ({user.role})")
        return user

    def get_by_email(self, email: str,
                     session: Optional[Session] = None) -> Optional[User]:
        """按邮箱查询用户（当前租户内）。"""
        def _query(sess):
            return self._query(sess, User).filter(
                User.email == email.strip().lower()
            ).first()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def authenticate(self, email: str, password: str) -> Optional[User]:
        """校验邮箱和密码，成功时更新最近登录时间。

        未绑定租户时会在所有公司中查找该邮箱。

        Returns:
            校验通过且处于启用状态的 User，否则返回 None。
        """
        with self._get_session() as sess:
            candidates = self._query(sess, User).filter(
                User.email == email.strip().lower(),
                User.is_active.is_(True),
            ).order_by(User.created_at).all()
            for user in candidates:
                if verify_password(password, user.password_hash):
                    user.last_login_at = utcnow()
                    sess.commit()
                    return user

        logger.warning(f"Login rejected for {email}")
        return None

    def toggle_active(self, user_id: str,
                      session: Optional[Session] = None) -> User:
        """切换用户启用状态。

        Raises:
            NotFoundError: 用户不存在。
        """
        def _do(sess):
            user = self.require(User, user_id, session=sess)
            user.is_active = not user.is_active
            sess.flush()
            return user

        if session:
            return _do(session)

        with self._get_session() as sess:
            user = _do(sess)
            sess.commit()
        logger.info(f"User {user.email} active={user.is_active}")
        return user

    def delete(self, user_id: str,
               session: Optional[Session] = None) -> None:
        """删除用户。

        Raises:
            NotFoundError: 用户不存在。
        """
        self.require(User, user_id, session=session)
        self.delete_by_id(User, user_id, session=session)

    def list_users(self, session: Optional[Session] = None) -> List[User]:
        """获取当前租户的所有用户（按创建时间）。"""
        return self.get_all(User, order_by=User.created_at, session=session)


class CustomerRepository(BaseCRUD):
    """顾客仓库。"""

    def __init__(self, conn: DatabaseConnection,
                 company_id: Optional[str] = None) -> None:
        super().__init__(conn, company_id)

    def create(self, data: Dict[str, Any],
               company_id: Optional[str] = None,
               session: Optional[Session] = None) -> Customer:
        """创建顾客。

        Args:
            data: 顾客数据，详见 CustomerCreate。
            company_id: 未绑定租户时指定所属公司。

        Returns:
            新创建的 Customer 对象。
        """
        payload = validate(CustomerCreate, data)
        owner = self._owner_company(company_id or (data or {}).get("company_id"))

        def _do(sess):
            self.require(Company, owner, session=sess)
            customer = Customer(company_id=owner, **payload.model_dump())
            sess.add(customer)
            sess.flush()
            return customer

        if session:
            return _do(session)

        with self._get_session() as sess:
            customer = _do(sess)
            sess.commit()
            return customer

    def get(self, customer_id: str,
            session: Optional[Session] = None) -> Customer:
        """按ID获取顾客，不存在抛出 NotFoundError。"""
        return self.require(Customer, customer_id, session=session)

    def update(self, customer_id: str, data: Dict[str, Any],
               session: Optional[Session] = None) -> Customer:
        """更新顾客信息（只更新传入的字段）。"""
        fields = changes(validate(CustomerUpdate, data))
        self.require(Customer, customer_id, session=session)
        return self.update_by_id(Customer, customer_id, session=session, **fields)

    def delete(self, customer_id: str,
               session: Optional[Session] = None) -> None:
        """删除顾客，连同其宠物、预约和通知。

        Raises:
            NotFoundError: 顾客不存在。
            ValidationFailure: 顾客名下存在套餐（台账记录不可删除）。
        """
        def _do(sess):
            customer = self.require(Customer, customer_id, session=sess)
            has_packages = sess.query(CustomerPackage.id).filter(
                CustomerPackage.customer_id == customer_id
            ).first()
            if has_packages:
                raise ValidationFailure(
                    "Customer has packages and cannot be deleted",
                    [{"field": "customer_id",
                      "message": "Customer has packages"}],
                )
            sess.delete(customer)
            sess.flush()

        if session:
            return _do(session)

        with self._get_session() as sess:
            _do(sess)
            sess.commit()
        logger.info(f"Customer deleted: {customer_id}")

    def search(self, keyword: str,
               session: Optional[Session] = None) -> List[Customer]:
        """按姓名或电话搜索顾客。

        Args:
            keyword: 搜索关键词。

        Returns:
            匹配的顾客列表。
        """
        def _query(sess):
            return self._query(sess, Customer).filter(
                or_(
                    Customer.name.contains(keyword),
                    Customer.phone.contains(keyword)
                )
            ).order_by(Customer.name).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def list_with_pet_count(self, session: Optional[Session] = None
                            ) -> List[Dict[str, Any]]:
        """获取顾客列表，附带宠物数量（按创建时间倒序）。"""
        def _query(sess):
            query = sess.query(Customer, func.count(Pet.id)).outerjoin(
                Pet, Pet.customer_id == Customer.id
            )
            rows = self._scope(query, Customer).group_by(Customer.id).order_by(
                Customer.created_at.desc()
            ).all()
            return [
                {**customer.to_dict(), "pet_count": pet_count}
                for customer, pet_count in rows
            ]

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)


class PetRepository(BaseCRUD):
    """宠物仓库。"""

    def __init__(self, conn: DatabaseConnection,
                 company_id: Optional[str] = None) -> None:
        super().__init__(conn, company_id)

    def create(self, data: Dict[str, Any],
               session: Optional[Session] = None) -> Pet:
        """为顾客登记宠物。

        Raises:
            NotFoundError: 顾客不存在（或不属于当前租户）。
        """
        payload = validate(PetCreate, data)

        def _do(sess):
            self.require(Customer, payload.customer_id, session=sess)
            pet = Pet(**payload.model_dump())
            sess.add(pet)
            sess.flush()
            return pet

        if session:
            return _do(session)

        with self._get_session() as sess:
            pet = _do(sess)
            sess.commit()
            return pet

    def get(self, pet_id: str, session: Optional[Session] = None) -> Pet:
        """按ID获取宠物，不存在抛出 NotFoundError。"""
        return self.require(Pet, pet_id, session=session)

    def update(self, pet_id: str, data: Dict[str, Any],
               session: Optional[Session] = None) -> Pet:
        """更新宠物信息（只更新传入的字段）。"""
        fields = changes(validate(PetUpdate, data))
        self.require(Pet, pet_id, session=session)
        return self.update_by_id(Pet, pet_id, session=session, **fields)

    def delete(self, pet_id: str, session: Optional[Session] = None) -> None:
        """删除宠物。

        Raises:
            NotFoundError: 宠物不存在。
            ValidationFailure: 宠物已有使用记录或预约。
        """
        def _do(sess):
            pet = self.require(Pet, pet_id, session=sess)
            used = sess.query(PackageUsage.id).filter(
                PackageUsage.pet_id == pet_id
            ).first()
            booked = sess.query(Appointment.id).filter(
                Appointment.pet_id == pet_id
            ).first()
            if used or booked:
                raise ValidationFailure(
                    "Pet has usage or appointment history and cannot be deleted",
                    [{"field": "pet_id", "message": "Pet is referenced"}],
                )
            sess.delete(pet)
            sess.flush()

        if session:
            return _do(session)

        with self._get_session() as sess:
            _do(sess)
            sess.commit()

    def list_by_customer(self, customer_id: str,
                         session: Optional[Session] = None) -> List[Pet]:
        """获取顾客的所有宠物（按登记顺序）。"""
        return self.get_all(
            Pet, filters={"customer_id": customer_id},
            order_by=Pet.created_at, session=session
        )

    def list_with_owner(self, session: Optional[Session] = None
                        ) -> List[Dict[str, Any]]:
        """获取宠物列表，附带主人姓名。"""
        def _query(sess):
            query = sess.query(Pet, Customer.name).join(
                Customer, Pet.customer_id == Customer.id
            )
            rows = self._scope(query, Pet).order_by(Pet.name).all()
            return [
                {**pet.to_dict(), "customer_name": customer_name}
                for pet, customer_name in rows
            ]

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)


class ServiceRepository(BaseCRUD):
    """服务目录仓库。

    服务只做软下架（active=False），历史使用记录和预约仍可引用。
    """

    def __init__(self, conn: DatabaseConnection,
                 company_id: Optional[str] = None) -> None:
        super().__init__(conn, company_id)

    def create(self, data: Dict[str, Any],
               company_id: Optional[str] = None,
               session: Optional[Session] = None) -> Service:
        """创建服务。"""
        payload = validate(ServiceCreate, data)
        owner = self._owner_company(company_id or (data or {}).get("company_id"))
        return super().create(
            Service, session=session, company_id=owner, **payload.model_dump()
        )

    def get(self, service_id: str,
            session: Optional[Session] = None) -> Service:
        """按ID获取服务，不存在抛出 NotFoundError。"""
        return self.require(Service, service_id, session=session)

    def update(self, service_id: str, data: Dict[str, Any],
               session: Optional[Session] = None) -> Service:
        """更新服务信息。"""
        fields = changes(validate(ServiceUpdate, data))
        self.require(Service, service_id, session=session)
        return self.update_by_id(Service, service_id, session=session, **fields)

    def retire(self, service_id: str,
               session: Optional[Session] = None) -> Service:
        """下架服务。"""
        self.require(Service, service_id, session=session)
        return self.update_by_id(Service, service_id, session=session, active=False)

    def list_active(self, session: Optional[Session] = None) -> List[Service]:
        """获取所有在售服务。"""
        return self.get_all(
            Service, filters={"active": True},
            order_by=Service.name, session=session
        )


class PackageTypeRepository(BaseCRUD):
    """套餐类型仓库。

    套餐类型由若干 PackageTypeService 组成（服务 + 包含次数 + 单价）。
    """

    def __init__(self, conn: DatabaseConnection,
                 company_id: Optional[str] = None) -> None:
        super().__init__(conn, company_id)

    def create(self, data: Dict[str, Any],
               company_id: Optional[str] = None,
               session: Optional[Session] = None) -> PackageType:
        """创建套餐类型及其包含的服务。

        Args:
            data: 套餐类型数据，详见 PackageTypeCreate。``services`` 中的
                每个服务必须属于同一公司。

        Raises:
            NotFoundError: 包含的服务不存在（或不属于当前租户）。
        """
        payload = validate(PackageTypeCreate, data)
        owner = self._owner_company(company_id or (data or {}).get("company_id"))

        def _do(sess):
            self.require(Company, owner, session=sess)
            fields = payload.model_dump(exclude={"services"})
            package_type = PackageType(company_id=owner, **fields)
            sess.add(package_type)
            sess.flush()
            for item in payload.services:
                service = self.require(Service, item.service_id, session=sess)
                if service.company_id != owner:
                    raise ValidationFailure(
                        "Service belongs to another company",
                        [{"field": "services", "message": "Unknown service"}],
                    )
                sess.add(PackageTypeService(
                    package_type_id=package_type.id,
                    service_id=item.service_id,
                    included_uses=item.included_uses,
                    unit_price=item.unit_price,
                ))
            sess.flush()
            return package_type

        if session:
            return _do(session)

        with self._get_session() as sess:
            package_type = _do(sess)
            sess.commit()
        logger.info(f"Package type created: {package_type.name}")
        return package_type

    def get(self, package_type_id: str,
            session: Optional[Session] = None) -> PackageType:
        """按ID获取套餐类型，不存在抛出 NotFoundError。"""
        return self.require(PackageType, package_type_id, session=session)

    def update(self, package_type_id: str, data: Dict[str, Any],
               session: Optional[Session] = None) -> PackageType:
        """更新套餐类型（只影响之后的购买和续费，不回写已售套餐）。"""
        fields = changes(validate(PackageTypeUpdate, data))
        self.require(PackageType, package_type_id, session=session)
        return self.update_by_id(
            PackageType, package_type_id, session=session, **fields
        )

    def deactivate(self, package_type_id: str,
                   session: Optional[Session] = None) -> PackageType:
        """停售套餐类型。"""
        self.require(PackageType, package_type_id, session=session)
        return self.update_by_id(
            PackageType, package_type_id, session=session, active=False
        )

    def list_active(self, session: Optional[Session] = None
                    ) -> List[PackageType]:
        """获取所有在售套餐类型。"""
        return self.get_all(
            PackageType, filters={"active": True},
            order_by=PackageType.name, session=session
        )

    def get_included_services(self, package_type_id: str,
                              session: Optional[Session] = None
                              ) -> List[Dict[str, Any]]:
        """获取套餐类型包含的服务明细。"""
        def _query(sess):
            self.require(PackageType, package_type_id, session=sess)
            rows = sess.query(PackageTypeService, Service.name).join(
                Service, PackageTypeService.service_id == Service.id
            ).filter(
                PackageTypeService.package_type_id == package_type_id
            ).order_by(Service.name).all()
            return [
                {**item.to_dict(), "service_name": service_name}
                for item, service_name in rows
            ]

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)
