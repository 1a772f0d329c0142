"""
积分相关 Schemas
"""
from pydantic import BaseModel, Field
from datetime import datetime
from typing import Dict, Optional, List


class CreditBalance(BaseModel):
    """积分余额"""
    credits: int
    used_credits: int


class CreditTransactionResponse(BaseModel):
    """积分交易记录响应"""
    id: int
    amount: int
    description: Optional[str]
    service_type: str
    balance_after: int
    created_at: datetime

    class Config:
        from_attributes = True


class Pagination(BaseModel):
    page: int
    limit: int
    total_pages: int


class CreditHistoryResponse(BaseModel):
    """积分历史列表响应"""
    transactions: List[CreditTransactionResponse]
    count: int
    pagination: Pagination


class PurchaseRequest(BaseModel):
    """购买积分请求（支付已由支付网关确认）"""
    user_id: str = Field(..., min_length=1, max_length=64)
    amount: int = Field(..., gt=0)
    payment_id: Optional[str] = Field(None, min_length=1, max_length=100)


class PurchaseResponse(BaseModel):
    """购买积分响应"""
    success: bool
    message: str
    credits: int


class PricingResponse(BaseModel):
    """服务计费表"""
    pricing: Dict[str, int]
    initial_grant: int
    fallback_refund_ratio: float
