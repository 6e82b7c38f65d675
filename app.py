#!/usr/bin/env python3
"""宠物美容门店管理平台 - 应用入口

启动：
1. Web API（登录、仪表盘、套餐台账、预约等）
2. 每日定时任务（套餐过期清理、通知发送）

使用方式：
    python app.py

    # 指定端口
    python app.py --port 8080

    # 指定数据库
    python app.py --db sqlite:///data/grooming.db

    # 不启动定时任务
    python app.py --no-scheduler

环境变量（在 .env 文件中配置，运行 python scripts/setup_env.py 生成）：
    DATABASE_URL      数据库连接地址
    WEB_HOST          监听地址（默认 0.0.0.0）
    WEB_PORT          Web 端口（默认 8080）
    WEB_TOKEN_HOURS   登录有效期（小时，默认 24）
    LOG_LEVEL         日志级别（默认 INFO）
"""
import argparse
import asyncio
import signal
import sys

from loguru import logger

from config.settings import settings


def configure_logging(level: str) -> None:
    """配置 loguru 日志输出级别"""
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


async def _cleanup(web, scheduler, db):
    """统一资源清理函数。

    确保 Web 服务器、调度器和数据库连接被正确关闭。
    """
    logger.info("Cleaning up...")

    # 1. 停止 Web 服务器（释放端口）
    if web is not None:
        try:
            await web.shutdown()
        except Exception as e:
            logger.warning(f"Error while stopping web server: {e}")

    # 2. 停止定时任务
    if scheduler is not None:
        scheduler.stop()

    # 3. 关闭数据库连接（释放连接池）
    if db is not None:
        db.close()

    logger.info("Service stopped")


async def main(argv=None):
    parser = argparse.ArgumentParser(description="Pet grooming management platform")
    parser.add_argument("--host", default=settings.web_host,
                        help="listen address")
    parser.add_argument("--port", type=int, default=settings.web_port,
                        help="listen port")
    parser.add_argument("--db", default=None,
                        help="database URL (defaults to DATABASE_URL)")
    parser.add_argument("--log-level", default=settings.log_level,
                        help="log level (DEBUG/INFO/WARNING/ERROR)")
    parser.add_argument("--no-scheduler", action="store_true",
                        help="do not run the daily expiry sweep")
    args = parser.parse_args(argv)

    configure_logging(args.log_level)

    # 用于 finally 清理的引用
    web = None
    scheduler = None
    db = None

    try:
        # 初始化数据库
        from database import DatabaseManager
        db = DatabaseManager(args.db)
        db.create_tables()
        logger.info(f"Database connected: {db.database_url}")

        # 定时任务
        if not args.no_scheduler:
            from business.scheduler import Scheduler
            from business.scheduler_tasks import register_tasks
            scheduler = Scheduler()
            # 单租户部署只处理默认公司，否则处理所有公司
            task_db = (
                db.for_company(settings.default_company_id)
                if settings.default_company_id else db
            )
            register_tasks(scheduler, task_db)
            scheduler.start()

        # Web API
        from interface.web.server import WebServer
        web = WebServer(db_manager=db, host=args.host, port=args.port)
        await web.startup()

        print()
        print("=" * 60)
        print("  Pet grooming platform is running")
        print(f"  API:      http://localhost:{args.port}/docs")
        print(f"  Database: {db.database_url}")
        print(f"  Scheduler: {'enabled' if scheduler else 'disabled'}")
        print("=" * 60)
        print("  Press Ctrl+C to stop")
        print()

        # 设置信号处理 —— 使用 asyncio 的信号处理确保事件循环能正确响应
        loop = asyncio.get_running_loop()
        shutdown_event = asyncio.Event()
        _shutdown_requested = False

        def signal_handler(signum):
            """处理退出信号"""
            nonlocal _shutdown_requested
            if _shutdown_requested:
                # 第二次收到信号，强制退出
                logger.warning("Second signal received, forcing exit")
                for task in asyncio.all_tasks(loop):
                    task.cancel()
                return
            _shutdown_requested = True
            logger.info(f"Received signal {signum}, shutting down...")
            shutdown_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler, sig)

        # 保持运行，直到收到退出信号
        await shutdown_event.wait()

    except asyncio.CancelledError:
        logger.info("Task cancelled, cleaning up...")
    finally:
        await _cleanup(web, scheduler, db)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        pass
