import argparse
import asyncio
import os
import sys

# 添加项目根目录到 python path
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from sqlalchemy import select

from hootool_credits.database import AsyncSessionLocal
from hootool_credits.models.credit import UserCredits
from hootool_credits.services.credit_service import get_credit_ledger


async def audit_credits(user_ids):
    ledger = get_credit_ledger()

    if not user_ids:
        async with AsyncSessionLocal() as session:
            result = await session.execute(select(UserCredits.user_id).order_by(UserCredits.user_id))
            user_ids = list(result.scalars().all())

    drifted = 0
    for user_id in user_ids:
        audit = await ledger.audit_balance(user_id)
        if audit.consistent:
            continue
        drifted += 1
        print(f"❌ {user_id}: 余额 {audit.cached_balance}，流水合计 {audit.ledger_total}")

    print(f"核对完成：{len(user_ids)} 个账户，{drifted} 个不一致")
    return drifted


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="核对积分余额与交易流水")
    parser.add_argument("user_ids", nargs="*", help="只核对指定用户（默认全部）")
    args = parser.parse_args()
    sys.exit(1 if asyncio.run(audit_credits(args.user_ids)) else 0)
