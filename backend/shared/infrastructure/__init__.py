"""Shared Infrastructure - 共享基础设施"""
