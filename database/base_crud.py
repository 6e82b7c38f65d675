"""通用 CRUD 基类与租户隔离。

所有仓库继承 BaseCRUD，获得：
- 会话获取（可复用外部会话，实现跨仓库的单一事务）
- 按 ID 查询 / 列表 / 创建 / 更新 / 删除
- 统一的租户（公司）隔离：仓库绑定 company_id 后，
  所有查询都经过 ``_scope()``，按模型的归属路径过滤。

模型通过类属性 ``__tenant_owner__`` 声明归属路径：

- ``"self"``：模型本身就是公司
- ``"company"``：模型带有 company_id 列
- ``"customer"``：经由 customer_id -> Customer.company_id
- ``"customer_package"``：经由 customer_package_id -> CustomerPackage -> Customer
- ``"package_type"``：经由 package_type_id -> PackageType.company_id
"""
from typing import Optional, List, Dict, Any, Type, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session, Query

from .connection import DatabaseConnection
from .errors import NotFoundError, ValidationFailure
from .models import Base, Customer, CustomerPackage, PackageType

ModelT = TypeVar("ModelT", bound=Base)


class BaseCRUD:
    """仓库基类。

    Attributes:
        conn: 数据库连接管理器。
        company_id: 绑定的租户ID，None 表示不做租户过滤（仅用于初始化/管理）。
    """

    def __init__(self, conn: DatabaseConnection,
                 company_id: Optional[str] = None) -> None:
        self.conn = conn
        self.company_id = company_id

    def _get_session(self) -> Session:
        """获取新的数据库会话。"""
        return self.conn.get_session()

    # ================================================================
    # 租户隔离
    # ================================================================

    def _tenant_clause(self, model: Type[Base]):
        """返回模型的租户过滤条件，未绑定租户时返回 None。"""
        if self.company_id is None:
            return None

        owner = getattr(model, "__tenant_owner__", None)
        if owner == "self":
            return model.id == self.company_id
        if owner == "company":
            return model.company_id == self.company_id
        if owner == "customer":
            return model.customer_id.in_(self._tenant_customer_ids())
        if owner == "customer_package":
            package_ids = select(CustomerPackage.id).where(
                CustomerPackage.customer_id.in_(self._tenant_customer_ids())
            )
            return model.customer_package_id.in_(package_ids)
        if owner == "package_type":
            type_ids = select(PackageType.id).where(
                PackageType.company_id == self.company_id
            )
            return model.package_type_id.in_(type_ids)
        raise ValueError(f"{model.__name__} has no tenant owner path")

    def _tenant_customer_ids(self):
        return select(Customer.id).where(Customer.company_id == self.company_id)

    def _scope(self, query: Query, *models: Type[Base]) -> Query:
        """对查询中出现的每个模型应用租户过滤。"""
        for model in models:
            clause = self._tenant_clause(model)
            if clause is not None:
                query = query.filter(clause)
        return query

    def _query(self, sess: Session, model: Type[ModelT]) -> Query:
        """创建已按租户过滤的模型查询。"""
        return self._scope(sess.query(model), model)

    def _owner_company(self, company_id: Optional[str] = None) -> str:
        """确定新建记录所属的公司。

        已绑定租户的仓库总是使用自身的 company_id，忽略外部传入值。

        Raises:
            ValidationFailure: 未绑定租户且未传入 company_id。
        """
        if self.company_id is not None:
            return self.company_id
        if not company_id:
            raise ValidationFailure(
                "company_id is required",
                [{"field": "company_id", "message": "Field required"}],
            )
        return company_id

    # ================================================================
    # 通用 CRUD
    # ================================================================

    def get_by_id(self, model: Type[ModelT], record_id: Any,
                  session: Optional[Session] = None) -> Optional[ModelT]:
        """按主键查询（受租户过滤）。

        Returns:
            模型对象，不存在或不属于当前租户时返回 None。
        """
        def _do(sess):
            return self._query(sess, model).filter(model.id == record_id).first()

        if session:
            return _do(session)

        with self._get_session() as sess:
            return _do(sess)

    def require(self, model: Type[ModelT], record_id: Any,
                session: Optional[Session] = None) -> ModelT:
        """按主键查询，不存在则抛出 NotFoundError。"""
        obj = self.get_by_id(model, record_id, session=session)
        if obj is None:
            raise NotFoundError(model.__name__, record_id)
        return obj

    def get_all(self, model: Type[ModelT],
                filters: Optional[Dict[str, Any]] = None,
                order_by: Any = None,
                session: Optional[Session] = None) -> List[ModelT]:
        """按等值条件查询列表。

        Args:
            model: 模型类。
            filters: 字段名 -> 值 的等值过滤条件。
            order_by: 排序表达式（可选）。
        """
        def _do(sess):
            query = self._query(sess, model)
            for field, value in (filters or {}).items():
                query = query.filter(getattr(model, field) == value)
            if order_by is not None:
                query = query.order_by(order_by)
            return query.all()

        if session:
            return _do(session)

        with self._get_session() as sess:
            return _do(sess)

    def count(self, model: Type[Base],
              filters: Optional[Dict[str, Any]] = None,
              session: Optional[Session] = None) -> int:
        """按等值条件计数。"""
        def _do(sess):
            query = self._query(sess, model)
            for field, value in (filters or {}).items():
                query = query.filter(getattr(model, field) == value)
            return query.count()

        if session:
            return _do(session)

        with self._get_session() as sess:
            return _do(sess)

    def create(self, model: Type[ModelT],
               session: Optional[Session] = None, **fields) -> ModelT:
        """创建记录并返回（已刷新的）模型对象。"""
        def _do(sess):
            obj = model(**fields)
            sess.add(obj)
            sess.flush()
            sess.refresh(obj)
            return obj

        if session:
            return _do(session)

        with self._get_session() as sess:
            obj = _do(sess)
            sess.commit()
            return obj

    def update_by_id(self, model: Type[ModelT], record_id: Any,
                     session: Optional[Session] = None,
                     **fields) -> Optional[ModelT]:
        """按主键更新字段。

        Returns:
            更新后的模型对象，不存在返回 None。
        """
        def _do(sess):
            obj = self._query(sess, model).filter(model.id == record_id).first()
            if obj is None:
                return None
            for field, value in fields.items():
                setattr(obj, field, value)
            sess.flush()
            sess.refresh(obj)
            return obj

        if session:
            return _do(session)

        with self._get_session() as sess:
            obj = _do(sess)
            if obj is not None:
                sess.commit()
            return obj

    def delete_by_id(self, model: Type[Base], record_id: Any,
                     session: Optional[Session] = None) -> bool:
        """按主键删除。

        Returns:
            是否删除成功（记录不存在返回 False）。
        """
        def _do(sess):
            obj = self._query(sess, model).filter(model.id == record_id).first()
            if obj is None:
                return False
            sess.delete(obj)
            sess.flush()
            return True

        if session:
            return _do(session)

        with self._get_session() as sess:
            deleted = _do(sess)
            if deleted:
                sess.commit()
            return deleted
