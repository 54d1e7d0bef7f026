"""Shared module - Cross-domain shared components.

目录结构:
- infrastructure/: 共享基础设施
  - db/: 数据库连接管理
  - orm/: ORM 基类
"""
