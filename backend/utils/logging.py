"""
Logging Utilities - 日志工具

架构说明：
- get_logger() 是无依赖的，可以被任何模块安全导入
- setup_logging() 需要 settings，在应用启动时调用
"""

from datetime import UTC, datetime
import json
import logging
import os
import sys
from typing import TextIO

# 应用自身的顶层包，统一挂载处理器
APP_LOGGER_NAMES = ("bootstrap", "domains", "shared", "scripts")


class JsonFormatter(logging.Formatter):
    """单行 JSON 日志格式"""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def get_logger(name: str) -> logging.Logger:
    """获取日志器（无依赖，可安全导入）"""
    return logging.getLogger(name)


def setup_logging(
    log_level: str | None = None,
    log_format: str = "text",
    is_development: bool | None = None,
    stream: TextIO | None = None,
) -> None:
    """设置日志

    Args:
        log_level: 日志级别，默认从环境变量 LOG_LEVEL 读取
        log_format: 日志格式 (text/json)
        is_development: 是否开发环境，默认从 APP_ENV 判断
        stream: 输出流，默认 stdout
    """
    # 从环境变量获取配置（避免循环依赖）
    if log_level is None:
        log_level = os.getenv("LOG_LEVEL", "INFO")
    if is_development is None:
        is_development = os.getenv("APP_ENV", "development") == "development"

    # 开发环境下使用 DEBUG 级别
    level = logging.DEBUG if is_development else getattr(logging, log_level.upper(), logging.INFO)

    if log_format == "json":
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    # 配置应用日志器（不干扰 uvicorn 的日志）
    for logger_name in APP_LOGGER_NAMES:
        app_logger = logging.getLogger(logger_name)
        app_logger.setLevel(level)

        # 如果没有处理器，添加一个
        if not app_logger.handlers:
            handler = logging.StreamHandler(stream or sys.stdout)
            handler.setFormatter(formatter)
            app_logger.addHandler(handler)
            app_logger.propagate = False  # 不传播到根日志器，避免重复

    # 设置第三方库日志级别
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("e2b").setLevel(logging.WARNING)
