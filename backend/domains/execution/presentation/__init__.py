"""Execution Presentation Layer - HTTP 接口"""
