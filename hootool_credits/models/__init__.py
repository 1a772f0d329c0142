"""
数据库模型
"""
from hootool_credits.models.credit import UserCredits, CreditTransaction, ServiceType

__all__ = [
    "UserCredits",
    "CreditTransaction",
    "ServiceType",
]
