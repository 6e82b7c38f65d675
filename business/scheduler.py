"""定时任务调度器 - 通用的任务调度框架

具体的业务任务逻辑在 business/scheduler_tasks.py 中
"""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from typing import Callable, List
from loguru import logger


class Scheduler:
    """定时任务调度器

    通用的任务调度框架，不包含具体的业务逻辑
    业务逻辑通过回调函数注入。start() 需要在事件循环运行时调用。
    """

    def __init__(self, timezone: str = "UTC"):
        """初始化调度器

        Args:
            timezone: cron 触发器使用的时区，台账时间统一为 UTC
        """
        self.scheduler = AsyncIOScheduler(timezone=timezone)

    def add_daily_task(
        self,
        task_func: Callable,
        hour: int = 0,
        minute: int = 0,
        task_id: str = 'daily_task',
        task_name: str = 'Daily task'
    ):
        """添加每日定时任务

        Args:
            task_func: 任务函数（async 函数）
            hour: 小时 (0-23)
            minute: 分钟 (0-59)
            task_id: 任务ID
            task_name: 任务名称
        """
        self.scheduler.add_job(
            task_func,
            trigger=CronTrigger(hour=hour, minute=minute),
            id=task_id,
            name=task_name,
            replace_existing=True
        )
        logger.info(f"Added daily task '{task_name}' at {hour:02d}:{minute:02d}")

    def job_ids(self) -> List[str]:
        """已注册的任务ID列表"""
        return [job.id for job in self.scheduler.get_jobs()]

    def start(self):
        """启动调度器"""
        self.scheduler.start()
        logger.info("Scheduler started")

    def stop(self):
        """停止调度器"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")

    def remove_job(self, job_id: str):
        """移除任务

        Args:
            job_id: 任务ID
        """
        if self.scheduler.get_job(job_id) is None:
            logger.warning(f"Job {job_id} not found")
            return
        self.scheduler.remove_job(job_id)
        logger.info(f"Job {job_id} removed")
