"""系统数据仓库 —— 通知记录的数据访问层。

通知记录由消息界面或业务流程创建，初始状态为 pending；
实际发送由 business.notifier 中的适配器完成，发送结果回写为 sent / failed。
"""
from typing import Optional, List, Dict, Any

from loguru import logger
from sqlalchemy.orm import Session

from .base_crud import BaseCRUD
from .connection import DatabaseConnection
from .models import Customer, Notification, utcnow
from .schemas import NotificationCreate, validate


class NotificationRepository(BaseCRUD):
    """通知记录仓库。"""

    def __init__(self, conn: DatabaseConnection,
                 company_id: Optional[str] = None) -> None:
        super().__init__(conn, company_id)

    def create(self, data: Dict[str, Any],
               session: Optional[Session] = None) -> Notification:
        """创建待发送的通知记录。

        Args:
            data: 通知数据，详见 NotificationCreate。

        Raises:
            NotFoundError: 顾客不存在。
        """
        payload = validate(NotificationCreate, data)

        def _do(sess):
            self.require(Customer, payload.customer_id, session=sess)
            notification = Notification(status="pending", **payload.model_dump())
            sess.add(notification)
            sess.flush()
            return notification

        if session:
            return _do(session)

        with self._get_session() as sess:
            notification = _do(sess)
            sess.commit()
            return notification

    def get(self, notification_id: str,
            session: Optional[Session] = None) -> Notification:
        """按ID获取通知，不存在抛出 NotFoundError。"""
        return self.require(Notification, notification_id, session=session)

    def list_notifications(self, customer_id: Optional[str] = None,
                           status: Optional[str] = None,
                           session: Optional[Session] = None
                           ) -> List[Notification]:
        """获取通知列表（最新的在前），可按顾客和状态过滤。"""
        filters = {}
        if customer_id:
            filters["customer_id"] = customer_id
        if status:
            filters["status"] = status
        return self.get_all(
            Notification, filters=filters,
            order_by=Notification.created_at.desc(), session=session
        )

    def mark_sent(self, notification_id: str,
                  session: Optional[Session] = None) -> Notification:
        """标记通知已发送。"""
        self.require(Notification, notification_id, session=session)
        return self.update_by_id(
            Notification, notification_id, session=session,
            status="sent", sent_at=utcnow()
        )

    def mark_failed(self, notification_id: str, error: str,
                    session: Optional[Session] = None) -> Notification:
        """标记通知发送失败，错误信息写入 metadata。"""
        notification = self.require(Notification, notification_id, session=session)
        meta = dict(notification.meta or {})
        meta["error"] = error
        logger.warning(f"Notification {notification_id} failed: {error}")
        return self.update_by_id(
            Notification, notification_id, session=session,
            status="failed", meta=meta
        )
