"""工具系统：协议、注册表、执行器、内置工具与外部工具适配。"""
