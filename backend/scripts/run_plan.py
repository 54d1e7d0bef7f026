#!/usr/bin/env python3
"""
计划执行脚本

从 JSON 文件读取计划并执行，结果以 JSON 输出到标准输出。
收到 SIGINT/SIGTERM 时中止执行并释放所有沙箱。

用法:
    python scripts/run_plan.py plan.json --organization-id org-1
    python scripts/run_plan.py plan.json --organization-id org-1 --provider docker
    python scripts/run_plan.py plan.json --organization-id org-1 --store memory --concurrency 4
"""

import argparse
import asyncio
import contextlib
import json
from pathlib import Path
import sys

# 添加项目根目录到 Python 路径（必须在导入项目模块之前）
sys.path.insert(0, str(Path(__file__).parent.parent))

from pydantic import ValidationError as PydanticValidationError  # pylint: disable=wrong-import-position

# pylint: disable=wrong-import-position
from bootstrap.config import settings
from domains.execution.application.engine import ExecutionEngine
from domains.execution.domain.types import ExecutionContext, ExecutionPlan
from domains.execution.infrastructure.memory.execution_store import (
    InMemoryExecutionStore,
    SqlAlchemyExecutionStore,
)
from domains.execution.infrastructure.models import object_record  # noqa: F401
from domains.execution.infrastructure.sandbox.factory import create_sandbox_pool
from domains.execution.infrastructure.tools.builtin import register_sandbox_tools
from domains.execution.infrastructure.tools.registry import ToolRegistry
from shared.infrastructure.db.database import close_db, create_tables, init_db
from utils.logging import get_logger, setup_logging

# pylint: enable=wrong-import-position

logger = get_logger("scripts.run_plan")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID_PLAN = 2
EXIT_INTERRUPTED = 130


def load_plan(path: Path) -> ExecutionPlan:
    """读取并校验计划文件"""
    with path.open(encoding="utf-8") as f:
        return ExecutionPlan.model_validate(json.load(f))


async def run(args: argparse.Namespace) -> int:
    try:
        plan = load_plan(args.plan)
    except (OSError, json.JSONDecodeError, PydanticValidationError) as e:
        logger.error("Invalid plan file %s: %s", args.plan, e)
        return EXIT_INVALID_PLAN

    # 命令行参数覆盖配置
    if args.provider:
        settings.sandbox_provider = args.provider
    store_type = args.store or settings.execution_store_type

    if store_type == "database":
        await init_db()
        await create_tables()
        store = SqlAlchemyExecutionStore()
    else:
        store = InMemoryExecutionStore()

    registry = ToolRegistry()
    register_sandbox_tools(registry)
    pool = create_sandbox_pool(settings, audit_sink=store)
    engine = ExecutionEngine(
        registry,
        store,
        pool,
        max_concurrency=args.concurrency or settings.engine_max_concurrency,
        release_sandbox_after_run=settings.engine_release_sandbox_after_run,
    )

    context = ExecutionContext.for_plan(plan, args.organization_id)
    exit_code = EXIT_OK
    try:
        async with pool:
            pool.install_signal_handlers()
            run_task = asyncio.create_task(engine.execute_plan(plan, context))
            shutdown_task = asyncio.create_task(pool.shutdown_requested.wait())
            done, _ = await asyncio.wait(
                {run_task, shutdown_task},
                return_when=asyncio.FIRST_COMPLETED,
            )

            if run_task in done:
                shutdown_task.cancel()
                result = run_task.result()
                print(json.dumps(result.model_dump(mode="json", by_alias=True), indent=2))
                exit_code = EXIT_OK if result.success else EXIT_FAILED
            else:
                logger.warning("Execution %s interrupted", context.id)
                run_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await run_task
                exit_code = EXIT_INTERRUPTED
    finally:
        if store_type == "database":
            await close_db()

    return exit_code


def main() -> int:
    parser = argparse.ArgumentParser(description="执行计划文件")
    parser.add_argument("plan", type=Path, help="计划 JSON 文件路径")
    parser.add_argument("--organization-id", required=True, help="组织 ID")
    parser.add_argument(
        "--provider",
        choices=["e2b", "docker"],
        help="沙箱提供方（默认读取 SANDBOX_PROVIDER）",
    )
    parser.add_argument(
        "--store",
        choices=["database", "memory"],
        help="执行记录存储（默认读取 EXECUTION_STORE_TYPE）",
    )
    parser.add_argument("--concurrency", type=int, help="同时运行的步骤数上限")
    args = parser.parse_args()

    if args.concurrency is not None and args.concurrency < 1:
        parser.error("--concurrency must be at least 1")

    setup_logging(
        log_level=settings.log_level,
        log_format="text",
        is_development=settings.is_development,
        stream=sys.stderr,
    )
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
