"""定时任务 —— 每日套餐过期清理与通知发送。

任务本身是 async 函数，数据库操作放到线程中执行，避免阻塞事件循环。
"""
import asyncio
from datetime import datetime
from functools import partial
from typing import Dict, Optional

from loguru import logger

from config.settings import settings
from database import DatabaseManager
from .notifier import NotificationDispatcher, NotificationSender
from .scheduler import Scheduler

EXPIRY_SWEEP_JOB_ID = "package_expiry_sweep"
NOTIFICATION_JOB_ID = "notification_dispatch"

NOTIFICATION_DELAY_MINUTES = 5


def notification_dispatch_time(hour: int, minute: int,
                               delay: int = NOTIFICATION_DELAY_MINUTES):
    """过期清理之后 delay 分钟的 (hour, minute)，分钟溢出进位到小时，跨天回到 0 点。"""
    total = (hour * 60 + minute + delay) % (24 * 60)
    return divmod(total, 60)


async def expire_packages_task(db: DatabaseManager,
                               now: Optional[datetime] = None) -> int:
    """将已过有效期的 active 套餐标记为 expired。

    Returns:
        本次标记的套餐数量。
    """
    try:
        expired = await asyncio.to_thread(db.expire_overdue_packages, now)
    except Exception:
        logger.exception("Package expiry sweep failed")
        raise
    logger.info(f"Package expiry sweep finished: {expired} expired")
    return expired


async def dispatch_notifications_task(db: DatabaseManager,
                                      sender: Optional[NotificationSender] = None
                                      ) -> Dict[str, int]:
    """发送所有待发送的通知。"""
    dispatcher = NotificationDispatcher(db, sender)
    return await asyncio.to_thread(dispatcher.dispatch_pending)


def register_tasks(scheduler: Scheduler, db: DatabaseManager,
                   sender: Optional[NotificationSender] = None) -> None:
    """向调度器注册所有每日任务。"""
    dispatch_hour, dispatch_minute = notification_dispatch_time(
        settings.expiry_sweep_hour, settings.expiry_sweep_minute
    )
    scheduler.add_daily_task(
        partial(expire_packages_task, db),
        hour=settings.expiry_sweep_hour,
        minute=settings.expiry_sweep_minute,
        task_id=EXPIRY_SWEEP_JOB_ID,
        task_name="Package expiry sweep",
    )
    scheduler.add_daily_task(
        partial(dispatch_notifications_task, db, sender),
        hour=dispatch_hour,
        minute=dispatch_minute,
        task_id=NOTIFICATION_JOB_ID,
        task_name="Notification dispatch",
    )
