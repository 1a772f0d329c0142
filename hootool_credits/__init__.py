"""
HooTool 积分服务
"""
__version__ = "1.0.0"
