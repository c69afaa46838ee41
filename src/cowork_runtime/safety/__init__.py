"""安全层：权限记录存储、权限闸门、待确认请求中枢。"""
