#!/usr/bin/env python3
"""交互式生成 .env 配置文件

使用方式：
    python scripts/setup_env.py

会引导用户填写必要的配置项，生成 .env 文件。
"""
import os
import sys

# 项目根目录
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
ENV_FILE = os.path.join(PROJECT_ROOT, ".env")


# 配置项定义：(env_key, 描述, 默认值, 是否必填)
CONFIG_ITEMS = [
    # === 数据库 ===
    ("DATABASE_URL", "数据库连接地址", "sqlite:///data/grooming.db", False),
    ("DEFAULT_COMPANY_ID", "单租户部署时的默认公司ID（可留空）", "", False),

    # === Web 平台 ===
    ("WEB_HOST", "Web 监听地址", "0.0.0.0", False),
    ("WEB_PORT", "Web 监听端口", "8080", False),
    ("WEB_TOKEN_HOURS", "登录有效期（小时）", "24", False),

    # === 日志 ===
    ("LOG_LEVEL", "日志级别", "INFO", False),

    # === 套餐 / 仪表盘阈值 ===
    ("RISK_WINDOW_DAYS", "风险客户窗口（天）", "15", False),
    ("EXPIRY_ALERT_DAYS", "行动队列到期提醒（天）", "3", False),
    ("LOW_BALANCE_USES", "行动队列低余额（次）", "1", False),
    ("INACTIVITY_DAYS", "行动队列未使用提醒（天）", "25", False),

    # === 定时任务 ===
    ("EXPIRY_SWEEP_HOUR", "过期清理执行时间（小时，UTC）", "0", False),
    ("EXPIRY_SWEEP_MINUTE", "过期清理执行时间（分钟）", "5", False),
]


def main():
    print()
    print("=" * 60)
    print("  Pet Grooming Manager 配置向导")
    print("  生成 .env 配置文件")
    print("=" * 60)
    print()

    # 检查是否已存在 .env
    if os.path.exists(ENV_FILE):
        print(f"⚠️  检测到已有 .env 文件: {ENV_FILE}")
        choice = input("是否覆盖？(y/N): ").strip().lower()
        if choice != "y":
            print("已取消。")
            return
        print()

    # 收集配置
    env_lines = []
    env_lines.append("# Pet Grooming Manager 配置文件")
    env_lines.append("# 由 scripts/setup_env.py 自动生成")
    env_lines.append("")

    current_section = None

    for key, desc, default, required in CONFIG_ITEMS:
        # 根据前缀分组显示
        section = key.split("_")[0]
        if section != current_section:
            current_section = section
            env_lines.append("")
            section_names = {
                "DATABASE": "# === 数据库配置 ===",
                "DEFAULT": "# === 数据库配置 ===",
                "WEB": "# === Web 平台配置 ===",
                "LOG": "# === 日志配置 ===",
                "RISK": "# === 套餐 / 仪表盘阈值 ===",
                "EXPIRY": "# === 套餐 / 仪表盘阈值 ===",
                "LOW": "# === 套餐 / 仪表盘阈值 ===",
                "INACTIVITY": "# === 套餐 / 仪表盘阈值 ===",
            }
            header = section_names.get(section, f"# === {section} ===")
            # 避免重复写同一个 section header
            if not env_lines or env_lines[-1] != header:
                env_lines.append(header)

        # 提示用户输入
        req_tag = " [必填]" if required else ""
        default_hint = f" (默认: {default})" if default else ""

        print(f"📝 {desc}{req_tag}")

        while True:
            value = input(f"  {key}={default_hint}: ").strip()
            if not value:
                value = default
            if required and not value:
                print(f"  ❌ {key} 是必填项，请输入值。")
                continue
            break

        env_lines.append(f"{key}={value}")
        print()

    # 写入文件
    env_content = "\n".join(env_lines) + "\n"

    with open(ENV_FILE, "w", encoding="utf-8") as f:
        f.write(env_content)

    print("=" * 60)
    print(f"  ✅ 配置文件已生成: {ENV_FILE}")
    print()
    print("  启动应用：")
    print("    python app.py")
    print()
    print("  初始化数据库与种子数据：")
    print("    python scripts/init_db.py --email owner@petshop.com --password <密码>")
    print("=" * 60)


if __name__ == "__main__":
    main()

