"""
积分路由
"""
import math
from fastapi import APIRouter, Depends, Query

from hootool_credits.config import get_settings
from hootool_credits.schemas.credit import (
    CreditBalance,
    CreditHistoryResponse,
    CreditTransactionResponse,
    Pagination,
    PricingResponse,
    PurchaseRequest,
    PurchaseResponse,
)
from hootool_credits.services.credit_service import CreditLedger, get_credit_ledger
from hootool_credits.utils.security import get_current_user_id, require_service_role

router = APIRouter()
settings = get_settings()


@router.get("/balance", response_model=CreditBalance)
async def get_balance(
    user_id: str = Depends(get_current_user_id),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    """获取积分余额（新用户自动发放初始积分）"""
    credits, used_credits = await ledger.get_account(user_id)
    return CreditBalance(credits=credits, used_credits=used_credits)


@router.get("/history", response_model=CreditHistoryResponse)
async def get_history(
    limit: int = Query(10, ge=1, le=settings.transaction_page_size_max),
    page: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user_id),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    """获取积分交易记录（page 从 0 开始）"""
    transactions, count = await ledger.list_transactions(user_id, limit=limit, page=page)

    return CreditHistoryResponse(
        transactions=[CreditTransactionResponse.model_validate(t) for t in transactions],
        count=count,
        pagination=Pagination(
            page=page,
            limit=limit,
            total_pages=math.ceil(count / limit),
        ),
    )


@router.post("/purchase", response_model=PurchaseResponse)
async def purchase_credits(
    data: PurchaseRequest,
    _caller: dict = Depends(require_service_role),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    """
    购买积分入账

    只接受 service_role 令牌：由支付网关回调或内部计费服务在确认支付后调用，
    终端用户令牌会被拒绝（403）。payment_id 保证同一笔支付只入账一次。
    """
    credits = await ledger.grant_purchase(data.user_id, data.amount, data.payment_id)
    return PurchaseResponse(success=True, message="积分购买成功", credits=credits)


@router.get("/pricing", response_model=PricingResponse)
async def get_pricing(ledger: CreditLedger = Depends(get_credit_ledger)):
    """获取各服务的积分价格"""
    return PricingResponse(
        pricing=dict(ledger.pricing.costs),
        initial_grant=ledger.pricing.initial_grant,
        fallback_refund_ratio=ledger.pricing.fallback_refund_ratio,
    )
