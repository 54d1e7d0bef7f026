"""Execution Application Layer - 执行引擎"""

from domains.execution.application.engine import ExecutionEngine

__all__ = ["ExecutionEngine"]
