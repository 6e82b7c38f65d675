"""全局配置管理

所有用户可配置项均通过 .env 文件设置，运行时自动加载到此处。

使用方式：
    1. 运行 python scripts/setup_env.py 生成 .env 文件
    2. 或手动创建 .env 文件（参考 .env.example）
"""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """应用配置 - 所有字段均可通过 .env 或环境变量覆盖"""

    # ========== 数据库 ==========
    database_url: str = "sqlite:///data/grooming.db"
    # 单租户部署时使用的默认公司ID（为空则不限定租户）
    default_company_id: Optional[str] = None

    # ========== Web 平台配置 ==========
    web_host: str = "0.0.0.0"
    web_port: int = 8080
    web_token_hours: int = 24

    # ========== 日志 ==========
    log_level: str = "INFO"

    # ========== 套餐 / 仪表盘阈值 ==========
    risk_window_days: int = 15       # 风险客户：到期日在 N 天之内
    expiry_alert_days: int = 3       # 行动队列 high：N 天内到期
    low_balance_uses: int = 1        # 行动队列 medium：剩余次数 <= N
    inactivity_days: int = 25        # 行动队列 low：N 天未使用
    occupancy_slots_per_day: int = 40
    recent_activity_limit: int = 5
    analytics_top_services: int = 4  # 套餐分析中展示的常用服务数

    # ========== 定时任务 ==========
    expiry_sweep_hour: int = 0
    expiry_sweep_minute: int = 5

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


# 全局配置实例
settings = Settings()
