"""Execution Domain Layer - 领域类型、安全策略与接口定义"""
