"""
Plan Execution Engine - Main Application

FastAPI 应用入口点
"""

from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
import sys
import traceback
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from bootstrap.config import settings
from domains.execution.application.engine import ExecutionEngine
from domains.execution.domain.interfaces import SandboxProvider
from domains.execution.infrastructure.memory.execution_store import (
    InMemoryExecutionStore,
    SqlAlchemyExecutionStore,
)

# 导入模型以注册到 Base.metadata
from domains.execution.infrastructure.models import object_record  # noqa: F401
from domains.execution.infrastructure.sandbox.factory import create_sandbox_pool
from domains.execution.infrastructure.tools.builtin import register_sandbox_tools
from domains.execution.infrastructure.tools.registry import ToolRegistry
from domains.execution.presentation.router import router as execution_router
from exceptions import (
    ConflictError,
    ExecutionEngineError,
    ExternalServiceError,
    NotFoundError,
    PolicyViolationError,
    SandboxError,
    ToolExecutionError,
    ValidationError,
)
from shared.infrastructure.db.database import close_db, create_tables, init_db
from utils.logging import get_logger, setup_logging

logger = get_logger(__name__)


def create_app(
    sandbox_provider: SandboxProvider | None = None,
    memory_store: InMemoryExecutionStore | SqlAlchemyExecutionStore | None = None,
) -> FastAPI:
    """创建 FastAPI 应用

    Args:
        sandbox_provider: 沙箱提供方，默认按 settings.sandbox_provider 创建
        memory_store: 执行记录存储，默认按 settings.execution_store_type 创建
    """

    @asynccontextmanager
    async def lifespan(fastapi_app: FastAPI) -> AsyncGenerator[None, None]:
        """应用生命周期管理"""
        logger.info("=" * 60)
        logger.info("启动 Plan Execution Engine")
        logger.info("  APP_ENV: %s (is_development=%s)", settings.app_env, settings.is_development)
        logger.info("  SANDBOX_PROVIDER: %s", settings.sandbox_provider)
        logger.info("  EXECUTION_STORE: %s", settings.execution_store_type)
        logger.info("=" * 60)

        setup_logging(
            log_level=settings.log_level,
            log_format=settings.log_format,
            is_development=settings.is_development,
        )

        store = memory_store
        uses_database = store is None and settings.execution_store_type == "database"
        if uses_database:
            await init_db()
            await create_tables()
            store = SqlAlchemyExecutionStore()
        elif store is None:
            store = InMemoryExecutionStore()

        tool_registry = ToolRegistry()
        register_sandbox_tools(tool_registry)

        sandbox_pool = create_sandbox_pool(settings, provider=sandbox_provider, audit_sink=store)
        await sandbox_pool.start()

        fastapi_app.state.memory_store = store
        fastapi_app.state.tool_registry = tool_registry
        fastapi_app.state.sandbox_pool = sandbox_pool
        fastapi_app.state.engine = ExecutionEngine(
            tool_registry,
            store,
            sandbox_pool,
            max_concurrency=settings.engine_max_concurrency,
            release_sandbox_after_run=settings.engine_release_sandbox_after_run,
        )
        logger.info("Execution engine ready (%d tools)", len(tool_registry.get_all()))

        try:
            yield
        finally:
            # 释放所有仍在跟踪的沙箱
            await sandbox_pool.stop()
            if uses_database:
                await close_db()
            logger.info("Plan Execution Engine stopped")

    fastapi_app = FastAPI(
        title=settings.app_name,
        description="计划执行引擎 API",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_exception_handlers(fastapi_app)

    fastapi_app.include_router(execution_router, prefix=settings.api_prefix, tags=["Execution"])

    @fastapi_app.get("/health")
    async def health() -> dict[str, str]:
        """健康检查"""
        return {"status": "healthy"}

    return fastapi_app


# =============================================================================
# 全局异常处理器
# =============================================================================


def _error_response(
    status_code: int,
    message: str,
    code: str | None = None,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    """构建错误响应"""
    content: dict[str, Any] = {"detail": message}
    if code:
        content["code"] = code
    if details:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


def _handler(status_code: int, log_label: str, *, error: bool = False) -> Callable[..., Any]:
    async def handle(_request: Request, exc: ExecutionEngineError) -> JSONResponse:
        if error:
            logger.error("%s: %s", log_label, exc.message)
        else:
            logger.warning("%s: %s", log_label, exc.message)
        return _error_response(
            status_code=status_code,
            message=exc.message,
            code=exc.code,
            details=exc.details,
        )

    return handle


async def _unhandled_exception_handler(_request: Request, exc: Exception) -> JSONResponse:
    """处理未捕获的异常"""
    logger.exception("Unhandled exception: %s", exc)

    if settings.is_development:
        print("=" * 80, file=sys.stderr)
        print(f"ERROR: {type(exc).__name__}: {exc}", file=sys.stderr)
        traceback.print_exc(file=sys.stderr)
        print("=" * 80, file=sys.stderr)

    return _error_response(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        message="Internal server error",
        code="INTERNAL_ERROR",
    )


def _register_exception_handlers(fastapi_app: FastAPI) -> None:
    # 子类在前，Starlette 按 MRO 查找最近的处理器
    handlers: list[tuple[type[ExecutionEngineError], int, str, bool]] = [
        (ValidationError, status.HTTP_400_BAD_REQUEST, "Validation error", False),
        (NotFoundError, status.HTTP_404_NOT_FOUND, "Resource not found", False),
        (ConflictError, status.HTTP_409_CONFLICT, "Resource conflict", False),
        (PolicyViolationError, status.HTTP_403_FORBIDDEN, "Policy violation", False),
        (SandboxError, status.HTTP_503_SERVICE_UNAVAILABLE, "Sandbox error", True),
        (ExternalServiceError, status.HTTP_502_BAD_GATEWAY, "External service error", True),
        (ToolExecutionError, status.HTTP_500_INTERNAL_SERVER_ERROR, "Tool execution error", True),
        (ExecutionEngineError, status.HTTP_500_INTERNAL_SERVER_ERROR, "Execution error", True),
    ]
    for exc_class, status_code, label, error in handlers:
        fastapi_app.add_exception_handler(exc_class, _handler(status_code, label, error=error))
    fastapi_app.add_exception_handler(Exception, _unhandled_exception_handler)


app = create_app()
