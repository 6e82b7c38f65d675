"""Web API 服务 - 宠物美容门店管理后台

基于 FastAPI 提供 JSON API：
1. 登录认证（操作员邮箱 + 密码，Bearer token）
2. 仪表盘（头部指标、行动队列、最近动态、收入）
3. 顾客、宠物、服务、套餐类型、套餐台账、预约、通知、操作员管理

每个已认证请求都使用绑定到当前操作员所属公司的 DatabaseManager，
因此所有查询只会看到本公司的数据。

使用方式：
    ```python
    server = WebServer(db_manager=db, port=8080)
    await server.startup()
    # 访问 http://localhost:8080/docs 查看 API
    ```
"""
import asyncio
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from loguru import logger

from business.dashboard import Dashboard
from business.notifier import NotificationDispatcher, NotificationSender
from config.settings import settings
from database import DatabaseManager
from database.errors import NotFoundError, ValidationFailure, PersistenceFailure
from database.models import User, utcnow


@dataclass
class TokenInfo:
    """登录 token 对应的操作员信息"""
    user_id: str
    company_id: str
    expires_at: datetime


class WebServer:
    """Web API 服务

    路由（除 /api/login 和 /health 外均需要 Bearer token）：
    - POST /api/login, /api/logout；GET /api/me
    - GET  /api/dashboard/metrics | action-queue | recent-activity | revenue
    - GET  /api/analytics/packages
    - /api/customers, /api/pets, /api/services, /api/package-types
    - /api/packages（列表 / active / 购买 / 续费 / 使用 / 使用记录 / 续费链）
    - /api/appointments（列表 / stats / 创建 / 更新 / 删除）
    - /api/notifications（列表 / 创建 / 发送）
    - /api/users（列表 / 创建 / 启停 / 删除）
    - GET  /health
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        host: Optional[str] = None,
        port: Optional[int] = None,
        token_hours: Optional[int] = None,
        sender: Optional[NotificationSender] = None,
    ):
        self.db_manager = db_manager
        self.host = host or settings.web_host
        self.port = port or settings.web_port
        self.token_hours = token_hours or settings.web_token_hours
        self.sender = sender
        self.app = None
        self.running = False

        self._server = None  # uvicorn.Server 实例
        self._server_thread: Optional[threading.Thread] = None

        # 内存 token 存储（路由处理函数运行在线程池中）
        self._tokens: Dict[str, TokenInfo] = {}
        self._tokens_lock = threading.Lock()

    # ==================== Token 管理 ====================

    def _generate_token(self, user_id: str, company_id: str) -> str:
        """生成登录 token，同时清理已过期的 token"""
        token = secrets.token_hex(32)
        now = utcnow()
        with self._tokens_lock:
            expired = [key for key, info in self._tokens.items() if now > info.expires_at]
            for key in expired:
                del self._tokens[key]
            self._tokens[token] = TokenInfo(
                user_id=user_id,
                company_id=company_id,
                expires_at=now + timedelta(hours=self.token_hours),
            )
        return token

    def _verify_token(self, token: str) -> Optional[TokenInfo]:
        """验证 token，过期的 token 会被移除"""
        with self._tokens_lock:
            info = self._tokens.get(token)
            if info is None:
                return None
            if utcnow() > info.expires_at:
                del self._tokens[token]
                return None
            return info

    def _revoke_token(self, token: str) -> None:
        with self._tokens_lock:
            self._tokens.pop(token, None)

    # ==================== 应用 ====================

    def create_app(self):
        """创建 FastAPI 应用"""
        from fastapi import FastAPI, Request, Depends, HTTPException
        from fastapi.responses import JSONResponse

        app = FastAPI(
            title="Pet Grooming Manager",
            description="Packages, usage tracking, appointments and dashboard",
            version="1.0.0",
        )

        # ==================== 错误映射 ====================

        @app.exception_handler(NotFoundError)
        async def not_found_handler(request: Request, exc: NotFoundError):
            return JSONResponse(status_code=404, content={"error": str(exc)})

        @app.exception_handler(ValidationFailure)
        async def validation_handler(request: Request, exc: ValidationFailure):
            return JSONResponse(
                status_code=400,
                content={"error": exc.message, "errors": exc.errors},
            )

        @app.exception_handler(PersistenceFailure)
        async def persistence_handler(request: Request, exc: PersistenceFailure):
            return JSONResponse(status_code=500, content={"error": str(exc)})

        # ==================== 依赖 ====================

        def _bearer(request: Request) -> str:
            auth = request.headers.get("Authorization", "")
            return auth[7:] if auth.startswith("Bearer ") else ""

        def current_session(request: Request) -> TokenInfo:
            """从请求头中验证 token"""
            info = self._verify_token(_bearer(request))
            if info is None:
                raise HTTPException(status_code=401, detail="Not authenticated")
            return info

        def tenant_db(info: TokenInfo = Depends(current_session)) -> DatabaseManager:
            """当前操作员所属公司的 DatabaseManager"""
            return self.db_manager.for_company(info.company_id)

        # ==================== 认证 API ====================

        @app.post("/api/login")
        def login(data: dict):
            email = str(data.get("email", ""))
            password = str(data.get("password", ""))
            user = self.db_manager.users.authenticate(email, password)
            if user is None:
                return JSONResponse(
                    status_code=401,
                    content={"success": False, "error": "Invalid email or password"},
                )
            token = self._generate_token(user.id, user.company_id)
            logger.info(f"User logged in: {user.email}")
            return {"success": True, "token": token, "user": user.to_dict()}

        @app.post("/api/logout")
        def logout(request: Request, _=Depends(current_session)):
            self._revoke_token(_bearer(request))
            return {"success": True}

        @app.get("/api/me")
        def me(info: TokenInfo = Depends(current_session),
               db: DatabaseManager = Depends(tenant_db)):
            return db.users.require(User, info.user_id).to_dict()

        # ==================== 仪表盘 API ====================

        @app.get("/api/dashboard/metrics")
        def dashboard_metrics(db: DatabaseManager = Depends(tenant_db)):
            return Dashboard(db).metrics()

        @app.get("/api/dashboard/action-queue")
        def dashboard_action_queue(db: DatabaseManager = Depends(tenant_db)):
            return Dashboard(db).action_queue()

        @app.get("/api/dashboard/recent-activity")
        def dashboard_recent_activity(db: DatabaseManager = Depends(tenant_db)):
            return Dashboard(db).recent_activity()

        @app.get("/api/dashboard/revenue")
        def dashboard_revenue(db: DatabaseManager = Depends(tenant_db)):
            return Dashboard(db).revenue_by_service()

        @app.get("/api/analytics/packages")
        def analytics_packages(db: DatabaseManager = Depends(tenant_db)):
            return Dashboard(db).package_analytics()

        # ==================== 顾客 / 宠物 API ====================

        @app.get("/api/customers")
        def customers_list(search: Optional[str] = None,
                           db: DatabaseManager = Depends(tenant_db)):
            if search:
                return [c.to_dict() for c in db.customers.search(search)]
            return db.customers.list_with_pet_count()

        @app.post("/api/customers", status_code=201)
        def customers_create(data: dict, db: DatabaseManager = Depends(tenant_db)):
            return db.customers.create(data).to_dict()

        @app.get("/api/customers/{customer_id}")
        def customers_detail(customer_id: str,
                             db: DatabaseManager = Depends(tenant_db)):
            return db.get_customer_overview(customer_id)

        @app.patch("/api/customers/{customer_id}")
        def customers_update(customer_id: str, data: dict,
                             db: DatabaseManager = Depends(tenant_db)):
            return db.customers.update(customer_id, data).to_dict()

        @app.delete("/api/customers/{customer_id}")
        def customers_delete(customer_id: str,
                             db: DatabaseManager = Depends(tenant_db)):
            db.customers.delete(customer_id)
            return {"success": True}

        @app.get("/api/customers/{customer_id}/pets")
        def customer_pets(customer_id: str,
                          db: DatabaseManager = Depends(tenant_db)):
            db.customers.get(customer_id)
            return [p.to_dict() for p in db.pets.list_by_customer(customer_id)]

        @app.get("/api/pets")
        def pets_list(db: DatabaseManager = Depends(tenant_db)):
            return db.pets.list_with_owner()

        @app.post("/api/pets", status_code=201)
        def pets_create(data: dict, db: DatabaseManager = Depends(tenant_db)):
            return db.pets.create(data).to_dict()

        @app.patch("/api/pets/{pet_id}")
        def pets_update(pet_id: str, data: dict,
                        db: DatabaseManager = Depends(tenant_db)):
            return db.pets.update(pet_id, data).to_dict()

        @app.delete("/api/pets/{pet_id}")
        def pets_delete(pet_id: str, db: DatabaseManager = Depends(tenant_db)):
            db.pets.delete(pet_id)
            return {"success": True}

        # ==================== 服务 / 套餐类型 API ====================

        @app.get("/api/services")
        def services_list(db: DatabaseManager = Depends(tenant_db)):
            return [s.to_dict() for s in db.services.list_active()]

        @app.post("/api/services", status_code=201)
        def services_create(data: dict, db: DatabaseManager = Depends(tenant_db)):
            return db.services.create(data).to_dict()

        @app.patch("/api/services/{service_id}")
        def services_update(service_id: str, data: dict,
                            db: DatabaseManager = Depends(tenant_db)):
            return db.services.update(service_id, data).to_dict()

        @app.delete("/api/services/{service_id}")
        def services_retire(service_id: str,
                            db: DatabaseManager = Depends(tenant_db)):
            return db.services.retire(service_id).to_dict()

        @app.get("/api/package-types")
        def package_types_list(db: DatabaseManager = Depends(tenant_db)):
            return [t.to_dict() for t in db.package_types.list_active()]

        @app.post("/api/package-types", status_code=201)
        def package_types_create(data: dict,
                                 db: DatabaseManager = Depends(tenant_db)):
            return db.package_types.create(data).to_dict()

        @app.get("/api/package-types/{package_type_id}")
        def package_types_detail(package_type_id: str,
                                 db: DatabaseManager = Depends(tenant_db)):
            package_type = db.package_types.get(package_type_id)
            return {
                **package_type.to_dict(),
                "services": db.package_types.get_included_services(package_type_id),
            }

        @app.patch("/api/package-types/{package_type_id}")
        def package_types_update(package_type_id: str, data: dict,
                                 db: DatabaseManager = Depends(tenant_db)):
            return db.package_types.update(package_type_id, data).to_dict()

        @app.delete("/api/package-types/{package_type_id}")
        def package_types_deactivate(package_type_id: str,
                                     db: DatabaseManager = Depends(tenant_db)):
            return db.package_types.deactivate(package_type_id).to_dict()

        # ==================== 套餐台账 API ====================

        @app.get("/api/packages")
        def packages_list(db: DatabaseManager = Depends(tenant_db)):
            return db.packages.list_with_details()

        @app.get("/api/packages/active")
        def packages_active(db: DatabaseManager = Depends(tenant_db)):
            return db.get_active_packages()

        @app.post("/api/packages", status_code=201)
        def packages_purchase(data: dict, db: DatabaseManager = Depends(tenant_db)):
            return db.packages.purchase(data).to_dict()

        @app.get("/api/packages/{package_id}")
        def packages_detail(package_id: str,
                            db: DatabaseManager = Depends(tenant_db)):
            return db.packages.get(package_id).to_dict()

        @app.post("/api/packages/{package_id}/renew", status_code=201)
        def packages_renew(package_id: str,
                           db: DatabaseManager = Depends(tenant_db)):
            return db.renew_package(package_id)

        @app.post("/api/packages/{package_id}/use", status_code=201)
        def packages_use(package_id: str, data: dict,
                         db: DatabaseManager = Depends(tenant_db)):
            payload: Dict[str, Any] = {**data, "customer_package_id": package_id}
            return db.usages.record(payload).to_dict()

        @app.get("/api/packages/{package_id}/usages")
        def packages_usages(package_id: str,
                            db: DatabaseManager = Depends(tenant_db)):
            return [u.to_dict() for u in db.usages.list_by_package(package_id)]

        @app.get("/api/packages/{package_id}/chain")
        def packages_chain(package_id: str,
                           db: DatabaseManager = Depends(tenant_db)):
            return db.get_renewal_chain(package_id)

        # ==================== 预约 API ====================

        @app.get("/api/appointments")
        def appointments_list(db: DatabaseManager = Depends(tenant_db)):
            return db.appointments.list_with_details()

        @app.get("/api/appointments/stats")
        def appointments_stats(db: DatabaseManager = Depends(tenant_db)):
            return db.appointments.get_stats()

        @app.post("/api/appointments", status_code=201)
        def appointments_create(data: dict,
                                db: DatabaseManager = Depends(tenant_db)):
            return db.appointments.create(data).to_dict()

        @app.patch("/api/appointments/{appointment_id}")
        def appointments_update(appointment_id: str, data: dict,
                                db: DatabaseManager = Depends(tenant_db)):
            return db.appointments.update(appointment_id, data).to_dict()

        @app.delete("/api/appointments/{appointment_id}")
        def appointments_delete(appointment_id: str,
                                db: DatabaseManager = Depends(tenant_db)):
            if not db.appointments.delete(appointment_id):
                raise NotFoundError("Appointment", appointment_id)
            return {"success": True}

        # ==================== 通知 API ====================

        @app.get("/api/notifications")
        def notifications_list(customer_id: Optional[str] = None,
                               db: DatabaseManager = Depends(tenant_db)):
            return [
                n.to_dict()
                for n in db.notifications.list_notifications(customer_id=customer_id)
            ]

        @app.post("/api/notifications", status_code=201)
        def notifications_create(data: dict,
                                 db: DatabaseManager = Depends(tenant_db)):
            return db.notifications.create(data).to_dict()

        @app.post("/api/notifications/{notification_id}/send")
        def notifications_send(notification_id: str,
                               db: DatabaseManager = Depends(tenant_db)):
            return NotificationDispatcher(db, self.sender).dispatch(notification_id)

        # ==================== 操作员 API ====================

        @app.get("/api/users")
        def users_list(db: DatabaseManager = Depends(tenant_db)):
            return [u.to_dict() for u in db.users.list_users()]

        @app.post("/api/users", status_code=201)
        def users_create(data: dict, db: DatabaseManager = Depends(tenant_db)):
            return db.users.create(data).to_dict()

        @app.post("/api/users/{user_id}/toggle")
        def users_toggle(user_id: str, db: DatabaseManager = Depends(tenant_db)):
            return db.users.toggle_active(user_id).to_dict()

        @app.delete("/api/users/{user_id}")
        def users_delete(user_id: str,
                         info: TokenInfo = Depends(current_session),
                         db: DatabaseManager = Depends(tenant_db)):
            if user_id == info.user_id:
                raise ValidationFailure(
                    "Cannot delete the logged-in user",
                    [{"field": "user_id", "message": "Cannot delete yourself"}],
                )
            db.users.delete(user_id)
            return {"success": True}

        # ==================== 健康检查 ====================

        @app.get("/health")
        def health_check():
            return {
                "status": "ok",
                "running": self.running,
                "database": self.db_manager.database_url.split(":", 1)[0],
            }

        return app

    # ==================== 生命周期 ====================

    async def startup(self):
        """在独立线程中启动 uvicorn 服务器"""
        import uvicorn

        self.app = self.create_app()
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="warning",
            loop="asyncio",
        )
        self._server = uvicorn.Server(config)
        # 信号处理由 app.py 统一管理
        self._server.install_signal_handlers = lambda: None

        def run_server():
            try:
                asyncio.run(self._server.serve())
            except Exception:
                logger.exception("Web server crashed")

        self._server_thread = threading.Thread(target=run_server, daemon=True)
        self._server_thread.start()
        self.running = True

        # 等待服务器完成启动
        for _ in range(50):
            if self._server.started:
                break
            await asyncio.sleep(0.1)

        logger.info(f"Web API started: http://{self.host}:{self.port}")

    async def shutdown(self):
        """停止 Web 服务器"""
        self.running = False
        if self._server is None:
            return

        logger.info("Stopping web server...")
        self._server.should_exit = True
        if self._server_thread and self._server_thread.is_alive():
            await asyncio.to_thread(self._server_thread.join, 3.0)
        if self._server_thread and self._server_thread.is_alive():
            logger.warning("Web server did not stop within 3s, forcing exit")
            self._server.force_exit = True

        self._server = None
        self._server_thread = None
        logger.info("Web API stopped")
