"""Execution Store - 执行记录与沙箱审计存储"""
