"""Utils - 通用工具"""
