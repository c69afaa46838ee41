"""运行时核心：消息模型、turn loop、广播与 façade。"""
