"""
Domains - 领域层

采用 DDD 4 层架构的领域模块：
- execution: 计划执行领域（执行引擎、工具注册表、沙箱会话与沙箱池）
"""
