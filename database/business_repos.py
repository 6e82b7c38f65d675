"""业务记录仓库 —— 套餐台账、使用记录与预约的数据访问层。

- CustomerPackageRepository：套餐台账（购买、可用套餐查询、续费、过期清理）
- PackageUsageRepository：使用记录（原子扣减次数）
- AppointmentRepository：预约管理与统计

台账写操作必须显式失败：实体不存在抛出 NotFoundError，
套餐不可用抛出 PackageNotUsableError，数据库错误包装为 PersistenceFailure，
且整个操作在同一事务中完成，失败时整体回滚。
"""
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any

from loguru import logger
from sqlalchemy import case, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config.settings import settings
from config.business_config import business_config
from .base_crud import BaseCRUD
from .connection import DatabaseConnection
from .errors import (
    NotFoundError, ValidationFailure, PackageNotUsableError,
    PersistenceFailure
)
from .models import (
    Customer, Pet, Service, PackageType, CustomerPackage, PackageUsage,
    Appointment, PACKAGE_ACTIVE, PACKAGE_CONSUMED, PACKAGE_EXPIRED,
    PACKAGE_RENEWED, to_naive_utc
)
from .schemas import (
    PackagePurchase, UsageCreate, AppointmentCreate, AppointmentUpdate,
    validate, changes
)


class _LedgerMixin:
    """台账写操作的事务封装。"""

    @contextmanager
    def _unit_of_work(self, session: Optional[Session], action: str):
        """提供事务会话。

        使用外部会话时由调用方负责提交；否则在成功时提交，
        出错时回滚，并将数据库错误包装为 PersistenceFailure。
        """
        if session is not None:
            yield session
            return

        sess = self._get_session()
        try:
            yield sess
            sess.commit()
        except SQLAlchemyError as exc:
            sess.rollback()
            logger.error(f"{action} failed: {exc}")
            raise PersistenceFailure(f"{action} failed") from exc
        except Exception:
            sess.rollback()
            raise
        finally:
            sess.close()


class CustomerPackageRepository(_LedgerMixin, BaseCRUD):
    """顾客套餐（套餐台账）仓库。

    套餐状态：
    - active：购买或续费后的初始状态
    - consumed：使用记录将剩余次数扣减到 0
    - expired：过期清理（``expire_overdue``）发现已过有效期
    - renewed：已被续费生成的新套餐取代

    "可用"套餐的判定条件：status == active 且 valid_until >= now
    且 remaining_uses >= 1。
    """

    def __init__(self, conn: DatabaseConnection,
                 company_id: Optional[str] = None) -> None:
        super().__init__(conn, company_id)

    @staticmethod
    def _new_from_type(customer_id: str, package_type: PackageType,
                       acquired_at: datetime,
                       renewed_from_id: Optional[str] = None
                       ) -> CustomerPackage:
        """按套餐类型生成新的顾客套餐（次数、有效期、价格均取自类型）。"""
        return CustomerPackage(
            customer_id=customer_id,
            package_type_id=package_type.id,
            remaining_uses=package_type.total_uses,
            valid_until=acquired_at + timedelta(days=package_type.validity_days),
            status=PACKAGE_ACTIVE,
            renewed_from_id=renewed_from_id,
            purchase_price=package_type.price,
            acquired_at=acquired_at,
        )

    def purchase(self, data: Dict[str, Any],
                 now: Optional[datetime] = None,
                 session: Optional[Session] = None) -> CustomerPackage:
        """顾客购买套餐。

        Args:
            data: 包含 customer_id 和 package_type_id，可选 acquired_at。
            now: 购买时间（data 未给出 acquired_at 时使用，默认当前UTC时间）。

        Returns:
            新创建的 CustomerPackage 对象。

        Raises:
            NotFoundError: 顾客或套餐类型不存在。
            ValidationFailure: 套餐类型已停售，或与顾客不属于同一公司。
        """
        payload = validate(PackagePurchase, data)
        acquired_at = to_naive_utc(payload.acquired_at or now)

        with self._unit_of_work(session, "Package purchase") as sess:
            customer = self.require(Customer, payload.customer_id, session=sess)
            package_type = self.require(
                PackageType, payload.package_type_id, session=sess
            )
            if package_type.company_id != customer.company_id:
                raise NotFoundError("PackageType", payload.package_type_id)
            if not package_type.active:
                raise ValidationFailure(
                    "Package type is not available for sale",
                    [{"field": "package_type_id",
                      "message": "Package type is inactive"}],
                )
            package = self._new_from_type(customer.id, package_type, acquired_at)
            sess.add(package)
            sess.flush()

        logger.info(
            f"Package purchased: {package.id} "
            f"(customer={package.customer_id}, uses={package.remaining_uses})"
        )
        return package

    def get(self, package_id: str,
            session: Optional[Session] = None) -> CustomerPackage:
        """按ID获取顾客套餐，不存在抛出 NotFoundError。"""
        return self.require(CustomerPackage, package_id, session=session)

    def list_by_customer(self, customer_id: str,
                         session: Optional[Session] = None
                         ) -> List[CustomerPackage]:
        """获取顾客的所有套餐（最新购买在前）。"""
        return self.get_all(
            CustomerPackage, filters={"customer_id": customer_id},
            order_by=CustomerPackage.acquired_at.desc(), session=session
        )

    def list_with_details(self, session: Optional[Session] = None
                          ) -> List[Dict[str, Any]]:
        """获取所有套餐，附带顾客姓名和套餐类型名称。

        关联记录缺失时使用占位名称。
        """
        def _query(sess):
            query = sess.query(
                CustomerPackage, Customer.name, PackageType.name
            ).outerjoin(
                Customer, CustomerPackage.customer_id == Customer.id
            ).outerjoin(
                PackageType, CustomerPackage.package_type_id == PackageType.id
            )
            rows = self._scope(query, CustomerPackage).order_by(
                CustomerPackage.acquired_at.desc()
            ).all()
            unknown = business_config.get_unknown_package_label()
            return [
                {
                    **package.to_dict(),
                    "customer_name": customer_name or "Unknown customer",
                    "package_type_name": type_name or unknown,
                }
                for package, customer_name, type_name in rows
            ]

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def get_active(self, now: Optional[datetime] = None,
                   session: Optional[Session] = None
                   ) -> List[CustomerPackage]:
        """获取所有可用套餐。

        条件：status == active 且 valid_until >= now 且 remaining_uses >= 1。
        结果按购买时间、ID 排序。
        """
        current = to_naive_utc(now)

        def _query(sess):
            return self._query(sess, CustomerPackage).filter(
                CustomerPackage.status == PACKAGE_ACTIVE,
                CustomerPackage.valid_until >= current,
                CustomerPackage.remaining_uses >= 1,
            ).order_by(
                CustomerPackage.acquired_at, CustomerPackage.id
            ).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def renew(self, package_id: str, now: Optional[datetime] = None,
              session: Optional[Session] = None) -> CustomerPackage:
        """续费套餐。

        在同一事务中将原套餐标记为 renewed，并按套餐类型创建新套餐：
        次数重置为 total_uses，有效期从续费时间起算（不结转剩余天数），
        renewed_from_id 指向原套餐。

        Args:
            package_id: 原套餐ID。
            now: 续费时间（默认当前UTC时间）。

        Returns:
            新创建的 CustomerPackage 对象。

        Raises:
            NotFoundError: 套餐或其套餐类型不存在。
            ValidationFailure: 套餐已被续费过（续费链不允许分叉）。
            PersistenceFailure: 数据库错误（整个续费回滚）。
        """
        renewed_at = to_naive_utc(now)

        with self._unit_of_work(session, "Package renewal") as sess:
            original = self.require(CustomerPackage, package_id, session=sess)
            package_type = sess.query(PackageType).filter(
                PackageType.id == original.package_type_id
            ).first()
            if package_type is None:
                raise NotFoundError("PackageType", original.package_type_id)

            # 条件更新抢占原套餐，并发续费只有一个能成功
            stmt = update(CustomerPackage).where(
                CustomerPackage.id == original.id,
                CustomerPackage.status != PACKAGE_RENEWED,
            ).values(status=PACKAGE_RENEWED)
            result = sess.execute(
                stmt, execution_options={"synchronize_session": False}
            )
            if result.rowcount == 0:
                logger.warning(f"Renewal rejected for package {original.id}: already renewed")
                raise ValidationFailure(
                    "Package has already been renewed",
                    [{"field": "customer_package_id",
                      "message": "Package has already been renewed"}],
                )

            successor = self._new_from_type(
                original.customer_id, package_type, renewed_at,
                renewed_from_id=original.id
            )
            sess.add(successor)
            sess.flush()

        logger.info(f"Package renewed: {package_id} -> {successor.id}")
        return successor

    def expire_overdue(self, now: Optional[datetime] = None,
                       session: Optional[Session] = None) -> int:
        """过期清理：将已过有效期的 active 套餐标记为 expired。

        Returns:
            本次标记的套餐数量。
        """
        current = to_naive_utc(now)

        with self._unit_of_work(session, "Expiry sweep") as sess:
            stmt = update(CustomerPackage).where(
                CustomerPackage.status == PACKAGE_ACTIVE,
                CustomerPackage.valid_until < current,
            ).values(status=PACKAGE_EXPIRED)
            clause = self._tenant_clause(CustomerPackage)
            if clause is not None:
                stmt = stmt.where(clause)
            result = sess.execute(
                stmt, execution_options={"synchronize_session": False}
            )
            expired = result.rowcount or 0

        if expired:
            logger.info(f"Expiry sweep marked {expired} package(s) as expired")
        return expired

    def get_renewal_chain(self, package_id: str,
                          session: Optional[Session] = None
                          ) -> List[CustomerPackage]:
        """获取套餐所在的续费链（最早的套餐在前）。"""
        def _query(sess):
            package = self.require(CustomerPackage, package_id, session=sess)
            chain = [package]
            seen = {package.id}

            current = package
            while current.renewed_from_id and current.renewed_from_id not in seen:
                current = self.get_by_id(
                    CustomerPackage, current.renewed_from_id, session=sess
                )
                if current is None:
                    break
                chain.insert(0, current)
                seen.add(current.id)

            current = package
            while True:
                successor = self._query(sess, CustomerPackage).filter(
                    CustomerPackage.renewed_from_id == current.id
                ).first()
                if successor is None or successor.id in seen:
                    break
                chain.append(successor)
                seen.add(successor.id)
                current = successor
            return chain

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)


class PackageUsageRepository(_LedgerMixin, BaseCRUD):
    """套餐使用记录仓库。

    使用记录为不可变事件，创建后不更新、不删除。
    """

    def __init__(self, conn: DatabaseConnection,
                 company_id: Optional[str] = None) -> None:
        super().__init__(conn, company_id)

    @staticmethod
    def _unusable_reason(package: CustomerPackage, now: datetime) -> str:
        if package.status != PACKAGE_ACTIVE:
            return f"status is {package.status}"
        if package.valid_until < now:
            return "package has expired"
        return "no remaining uses"

    def record(self, data: Dict[str, Any],
               now: Optional[datetime] = None,
               session: Optional[Session] = None) -> PackageUsage:
        """记录一次套餐使用并扣减次数。

        扣减通过单条带条件的 UPDATE 完成（条件即"可用"判定），
        与使用记录的插入处于同一事务。剩余次数降到 0 时状态变为 consumed。

        Args:
            data: 包含 customer_package_id、pet_id、service_id，可选 notes。
            now: 使用时间（默认当前UTC时间）。

        Returns:
            新创建的 PackageUsage 对象。

        Raises:
            NotFoundError: 套餐、宠物或服务不存在。
            ValidationFailure: 宠物不属于套餐所属顾客。
            PackageNotUsableError: 套餐不可用（状态、有效期、剩余次数）。
            PersistenceFailure: 数据库错误。
        """
        payload = validate(UsageCreate, data)
        used_at = to_naive_utc(now)

        with self._unit_of_work(session, "Usage recording") as sess:
            package = self.require(
                CustomerPackage, payload.customer_package_id, session=sess
            )
            pet = self.require(Pet, payload.pet_id, session=sess)
            self.require(Service, payload.service_id, session=sess)
            if pet.customer_id != package.customer_id:
                raise ValidationFailure(
                    "Pet does not belong to the package owner",
                    [{"field": "pet_id",
                      "message": "Pet does not belong to the package owner"}],
                )

            remaining = CustomerPackage.remaining_uses
            stmt = update(CustomerPackage).where(
                CustomerPackage.id == package.id,
                CustomerPackage.status == PACKAGE_ACTIVE,
                CustomerPackage.valid_until >= used_at,
                remaining >= 1,
            ).values(
                remaining_uses=remaining - 1,
                status=case(
                    (remaining - 1 <= 0, PACKAGE_CONSUMED),
                    else_=PACKAGE_ACTIVE,
                ),
            )
            result = sess.execute(
                stmt, execution_options={"synchronize_session": False}
            )
            if result.rowcount == 0:
                reason = self._unusable_reason(package, used_at)
                logger.warning(f"Usage rejected for package {package.id}: {reason}")
                raise PackageNotUsableError(package.id, reason)

            usage = PackageUsage(
                customer_package_id=package.id,
                pet_id=payload.pet_id,
                service_id=payload.service_id,
                notes=payload.notes,
                used_at=used_at,
            )
            sess.add(usage)
            sess.flush()
            sess.refresh(package)

        logger.info(
            f"Usage recorded: package={package.id} "
            f"remaining={package.remaining_uses} status={package.status}"
        )
        return usage

    def list_by_package(self, package_id: str,
                        session: Optional[Session] = None
                        ) -> List[PackageUsage]:
        """获取套餐的所有使用记录（最近的在前）。

        Raises:
            NotFoundError: 套餐不存在。
        """
        def _query(sess):
            self.require(CustomerPackage, package_id, session=sess)
            return self._query(sess, PackageUsage).filter(
                PackageUsage.customer_package_id == package_id
            ).order_by(PackageUsage.used_at.desc()).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def recent(self, limit: int = 5,
               session: Optional[Session] = None) -> List[PackageUsage]:
        """获取最近的使用记录。"""
        def _query(sess):
            return self._query(sess, PackageUsage).order_by(
                PackageUsage.used_at.desc()
            ).limit(limit).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)


class AppointmentRepository(BaseCRUD):
    """预约仓库。

    预约与套餐台账相互独立，不会自动扣减套餐次数。
    """

    def __init__(self, conn: DatabaseConnection,
                 company_id: Optional[str] = None) -> None:
        super().__init__(conn, company_id)

    def create(self, data: Dict[str, Any],
               session: Optional[Session] = None) -> Appointment:
        """创建预约。

        Raises:
            NotFoundError: 顾客、宠物或服务不存在。
            ValidationFailure: 宠物不属于该顾客。
        """
        payload = validate(AppointmentCreate, data)

        def _do(sess):
            self.require(Customer, payload.customer_id, session=sess)
            pet = self.require(Pet, payload.pet_id, session=sess)
            self.require(Service, payload.service_id, session=sess)
            if pet.customer_id != payload.customer_id:
                raise ValidationFailure(
                    "Pet does not belong to the customer",
                    [{"field": "pet_id",
                      "message": "Pet does not belong to the customer"}],
                )
            fields = payload.model_dump()
            fields["scheduled_date"] = to_naive_utc(fields["scheduled_date"])
            appointment = Appointment(**fields)
            sess.add(appointment)
            sess.flush()
            return appointment

        if session:
            return _do(session)

        with self._get_session() as sess:
            appointment = _do(sess)
            sess.commit()
            return appointment

    def update(self, appointment_id: str, data: Dict[str, Any],
               session: Optional[Session] = None) -> Appointment:
        """更新预约（时间、状态、备注）。

        Raises:
            NotFoundError: 预约不存在。
            ValidationFailure: 状态值无效。
        """
        fields = changes(validate(AppointmentUpdate, data))
        if fields.get("scheduled_date") is not None:
            fields["scheduled_date"] = to_naive_utc(fields["scheduled_date"])
        self.require(Appointment, appointment_id, session=session)
        return self.update_by_id(
            Appointment, appointment_id, session=session, **fields
        )

    def delete(self, appointment_id: str,
               session: Optional[Session] = None) -> bool:
        """删除预约。"""
        return self.delete_by_id(Appointment, appointment_id, session=session)

    def list_with_details(self, session: Optional[Session] = None
                          ) -> List[Dict[str, Any]]:
        """获取预约列表，附带顾客、宠物、服务名称（按预约时间排序）。"""
        def _query(sess):
            query = sess.query(
                Appointment, Customer.name, Pet.name, Service.name
            ).outerjoin(
                Customer, Appointment.customer_id == Customer.id
            ).outerjoin(
                Pet, Appointment.pet_id == Pet.id
            ).outerjoin(
                Service, Appointment.service_id == Service.id
            )
            rows = self._scope(query, Appointment).order_by(
                Appointment.scheduled_date
            ).all()
            return [
                {
                    **appointment.to_dict(),
                    "customer_name": customer_name or "Unknown customer",
                    "pet_name": pet_name or "Unknown pet",
                    "service_name": service_name or "Unknown service",
                }
                for appointment, customer_name, pet_name, service_name in rows
            ]

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def get_stats(self, now: Optional[datetime] = None,
                  slots_per_day: Optional[int] = None,
                  session: Optional[Session] = None) -> Dict[str, int]:
        """预约统计。

        - today：今天的预约数
        - this_week：本周（周日开始）的预约数
        - pending：状态为 scheduled 的预约数
        - occupancy_rate：today / 每日可约时段数 × 100，四舍五入
        """
        current = to_naive_utc(now)
        slots = settings.occupancy_slots_per_day if slots_per_day is None else slots_per_day

        start_of_today = current.replace(hour=0, minute=0, second=0, microsecond=0)
        end_of_today = start_of_today + timedelta(days=1)
        # weekday(): 周一为0，换算为以周日为一周的第一天
        start_of_week = start_of_today - timedelta(days=(current.weekday() + 1) % 7)
        end_of_week = start_of_week + timedelta(days=7)

        def _count(sess, *conditions):
            return self._query(sess, Appointment).filter(*conditions).count()

        def _query(sess):
            today = _count(
                sess,
                Appointment.scheduled_date >= start_of_today,
                Appointment.scheduled_date < end_of_today,
            )
            this_week = _count(
                sess,
                Appointment.scheduled_date >= start_of_week,
                Appointment.scheduled_date < end_of_week,
            )
            pending = _count(sess, Appointment.status == "scheduled")
            occupancy = round(today / slots * 100) if slots > 0 else 0
            return {
                "today": today,
                "this_week": this_week,
                "pending": pending,
                "occupancy_rate": occupancy,
            }

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)
