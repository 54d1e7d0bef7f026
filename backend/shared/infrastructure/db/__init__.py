"""Database - SQLAlchemy 异步连接管理"""
