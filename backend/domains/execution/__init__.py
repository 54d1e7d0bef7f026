"""
Execution Domain - 计划执行领域

- domain/: 计划、步骤、执行上下文等类型与接口
- application/: 执行引擎
- infrastructure/: 工具注册表、沙箱、执行记录存储
- presentation/: HTTP 接口
"""
