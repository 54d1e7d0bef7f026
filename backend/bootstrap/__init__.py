"""Bootstrap - 应用配置与启动入口"""
