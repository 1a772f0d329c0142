"""
积分账户与积分交易模型
"""
from datetime import datetime
from enum import Enum
from sqlalchemy import String, Integer, DateTime, Text, CheckConstraint, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from hootool_credits.database import Base


class ServiceType(str, Enum):
    """交易来源类型"""
    IMAGE_GENERATION = "image_generation"  # 图片生成
    IMAGE_EDITING = "image_editing"        # 图片修改
    ART_CARD = "art_card"                  # 艺术卡片
    COVER_GENERATOR = "cover_generator"    # 公众号和小红书封面
    CHAT = "chat"                          # 聊天机器人
    PURCHASE = "purchase"                  # 购买
    REFUND = "refund"                      # 退款
    SYSTEM = "system"                      # 系统赠送


class UserCredits(Base):
    """用户积分账户表（余额是交易流水的缓存投影）"""
    __tablename__ = "user_credits"
    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_user_credits_credits_non_negative"),
        CheckConstraint("used_credits >= 0", name="ck_user_credits_used_non_negative"),
    )

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    credits: Mapped[int] = mapped_column(Integer, nullable=False)
    used_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # 累计消耗，只增不减
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )


class CreditTransaction(Base):
    """积分交易记录表（只追加，不修改）"""
    __tablename__ = "credit_transactions"
    __table_args__ = (
        UniqueConstraint("user_id", "request_id", name="uq_credit_transactions_user_request"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)  # 正数增加，负数减少
    description: Mapped[str] = mapped_column(Text, nullable=True)
    service_type: Mapped[str] = mapped_column(String(32), index=True)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)  # 交易后余额
    request_id: Mapped[str] = mapped_column(String(128), nullable=True)  # 幂等键
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, index=True
    )
