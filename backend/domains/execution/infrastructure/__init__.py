"""Execution Infrastructure Layer"""
