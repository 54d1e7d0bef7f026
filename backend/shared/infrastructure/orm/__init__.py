"""ORM - 模型基类与通用 Mixin"""
