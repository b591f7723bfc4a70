"""
FastAPI应用主入口
"""
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.middleware import LoggingMiddleware, RequestContextMiddleware
from api.routes import payments as payments_routes
from application.services.payment_orchestrator import PaymentOrchestrator
from application.services.webhook_verifier import WebhookVerifier
from core.config import settings
from core.exceptions import register_exception_handlers
from core.logging_config import get_logger
from core.response import success_response
from core.settings import PaymentSettings, payment_settings
from infrastructure.database import AsyncSessionLocal, create_tables, engine
from infrastructure.external.payments import build_provider_registry
from infrastructure.repositories.transaction_repository import SQLAlchemyTransactionRepository


logger = get_logger(__name__)


def build_orchestrator(
    session_factory: async_sessionmaker[AsyncSession],
    settings_: Optional[PaymentSettings] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> PaymentOrchestrator:
    """组装支付编排服务：注册表（启动后冻结）、仓储、Webhook 验签器"""
    s = settings_ or payment_settings
    registry = build_provider_registry(s, transport=transport)
    verifier = WebhookVerifier(
        registry,
        tolerance_seconds=s.webhook.tolerance_seconds,
        max_clock_skew_seconds=s.webhook.max_clock_skew_seconds,
    )
    return PaymentOrchestrator(
        registry,
        SQLAlchemyTransactionRepository(session_factory),
        verifier,
        provider_call_seconds=s.timeouts.provider_call_seconds,
        request_timeout_seconds=s.timeouts.request_timeout_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    # 开发/测试环境自动建表；生产环境由部署流程建表
    if settings.CREATE_TABLES_ON_STARTUP:
        await create_tables()
        logger.info("database_initialized", message="Database tables created")

    orchestrator = build_orchestrator(AsyncSessionLocal)
    app.state.orchestrator = orchestrator
    logger.info(
        "payment_service_initialized",
        providers=[p.value for p in orchestrator.registry.names()],
        default_provider=payment_settings.default_provider,
    )

    yield

    # 等待在途扣款落库后再释放连接
    await orchestrator.drain()
    await orchestrator.registry.aclose()
    await engine.dispose()
    logger.info("application_shutdown", message="Application shutdown")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
    description="Storefront payment transaction service",
)

# 添加中间件（注意顺序：后添加的先执行）
app.add_middleware(LoggingMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 注册全局异常处理器
register_exception_handlers(app)

# 注册路由
app.include_router(payments_routes.router, prefix="/api/v1")


@app.get("/", tags=["Root"])
async def root():
    """API根路径"""
    return success_response(
        data={
            "name": settings.PROJECT_NAME,
            "version": settings.VERSION,
            "docs": "/docs",
            "redoc": "/redoc",
        },
        message="Welcome",
    )


@app.get("/health", tags=["Health"])
async def health_check():
    """健康检查端点"""
    return success_response(data={"status": "healthy"}, message="OK")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info",
    )
