"""通知发送适配器 - 用于解耦具体的发送渠道

WhatsApp / 邮件的实际发送不在本项目范围内，默认使用只写日志的
LoggingNotificationSender。接入真实渠道时实现 NotificationSender 即可，
不需要修改仓库或 Web 层代码。
"""
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional

from loguru import logger

from database import DatabaseManager
from database.errors import GroomingError, ValidationFailure
from database.models import Notification


class NotificationDeliveryError(GroomingError):
    """通知发送失败。"""


class NotificationSender(ABC):
    """通知发送适配器抽象基类"""

    @abstractmethod
    def send(self, notification: Notification) -> None:
        """
        发送一条通知

        Args:
            notification: 通知记录（channel 决定发送渠道）

        Raises:
            NotificationDeliveryError: 发送失败
        """
        pass


class LoggingNotificationSender(NotificationSender):
    """只记录日志的发送实现（桩）"""

    def send(self, notification: Notification) -> None:
        logger.info(
            f"[{notification.channel}] to customer {notification.customer_id}: "
            f"{notification.message}"
        )


class NotificationDispatcher:
    """将待发送的通知交给发送适配器，并回写发送结果"""

    def __init__(self, db: DatabaseManager,
                 sender: Optional[NotificationSender] = None):
        self.db = db
        self.sender = sender or LoggingNotificationSender()

    def dispatch(self, notification_id: str) -> Dict[str, Any]:
        """
        发送一条 pending 状态的通知

        发送适配器抛出的非 NotificationDeliveryError 异常同样记为 failed。

        Returns:
            更新后的通知字典（status 为 sent 或 failed）

        Raises:
            NotFoundError: 通知不存在
            ValidationFailure: 通知不是 pending 状态（已发送或已失败）
        """
        notification = self.db.notifications.get(notification_id)
        if notification.status != "pending":
            message = f"Notification is already {notification.status}"
            raise ValidationFailure(message, [{"field": "status", "message": message}])
        try:
            self.sender.send(notification)
        except NotificationDeliveryError as e:
            return self.db.notifications.mark_failed(notification_id, str(e)).to_dict()
        except Exception as e:
            logger.exception(f"Unexpected error sending notification {notification_id}")
            return self.db.notifications.mark_failed(
                notification_id, f"{type(e).__name__}: {e}"
            ).to_dict()
        return self.db.notifications.mark_sent(notification_id).to_dict()

    def dispatch_pending(self) -> Dict[str, int]:
        """
        发送所有 pending 状态的通知

        Returns:
            {"sent": 成功数, "failed": 失败数}
        """
        result = {"sent": 0, "failed": 0}
        for notification in self.db.notifications.list_notifications(status="pending"):
            try:
                outcome = self.dispatch(notification.id)
            except ValidationFailure:
                # 列出之后已被其他请求发送
                logger.debug(f"Notification {notification.id} no longer pending, skipped")
                continue
            result[outcome["status"]] += 1
        if result["sent"] or result["failed"]:
            logger.info(f"Notifications dispatched: {result}")
        return result
