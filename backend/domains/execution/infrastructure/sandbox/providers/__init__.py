"""Sandbox Providers - 沙箱提供方实现"""
