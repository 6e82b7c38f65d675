"""用户接口模块 - 门店管理后台的对外接口

目前只有 Web API 一种接口：

- WebServer: 基于 FastAPI 的 JSON API（登录、仪表盘、套餐台账、预约、通知）

架构设计：
    操作员 ──→ WebServer ──→ DatabaseManager.for_company() ──→ 仓库 / 仪表盘
    (浏览器)    (token 认证)     (租户范围)

使用示例：
    ```python
    from interface import WebServer

    server = WebServer(db_manager=db, port=8080)
    await server.startup()
    ```
"""
from interface.web.server import WebServer

__all__ = [
    "WebServer",
]
