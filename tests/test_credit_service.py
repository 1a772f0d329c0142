import asyncio

import pytest
from sqlalchemy import select, text

from hootool_credits.config import Settings
from hootool_credits.models.credit import ServiceType, UserCredits
from hootool_credits.services.credit_service import (
    CreditLedger,
    CreditPricing,
    InsufficientCredits,
    LedgerValidationError,
    StorageError,
)

pytestmark = pytest.mark.anyio


async def _used_credits(session_factory, user_id: str) -> int:
    async with session_factory() as session:
        result = await session.execute(
            select(UserCredits.used_credits).where(UserCredits.user_id == user_id)
        )
        return result.scalar_one()


async def test_new_account_receives_initial_grant(ledger):
    balance = await ledger.get_balance("u1")
    assert balance == 100

    transactions, count = await ledger.list_transactions("u1")
    assert count == 1
    assert transactions[0].amount == 100
    assert transactions[0].service_type == ServiceType.SYSTEM.value
    assert transactions[0].description == "初始积分"
    assert transactions[0].balance_after == 100


async def test_repeated_balance_reads_do_not_regrant(ledger):
    assert await ledger.get_balance("u1") == 100
    assert await ledger.get_balance("u1") == 100

    _, count = await ledger.list_transactions("u1")
    assert count == 1


async def test_concurrent_lazy_init_writes_one_grant(ledger):
    balances = await asyncio.gather(*[ledger.get_balance("u-new") for _ in range(5)])

    assert balances == [100] * 5
    _, count = await ledger.list_transactions("u-new")
    assert count == 1


async def test_default_pricing_table():
    pricing = CreditPricing.from_settings(Settings())
    ledger = CreditLedger(session_factory=None, pricing=pricing)

    assert ledger.required_credits("image_generation") == 15
    assert ledger.required_credits(ServiceType.IMAGE_EDITING) == 12
    assert ledger.required_credits("art_card") == 25
    assert ledger.required_credits("cover_generator") == 25
    assert ledger.required_credits("chat") == 1
    assert ledger.required_credits("image_processing") == 0
    assert pricing.initial_grant == 100


def test_pricing_rejects_negative_cost():
    with pytest.raises(ValueError):
        CreditPricing(costs={"chat": -1})


async def test_unpriced_service_is_free(ledger):
    balance = await ledger.deduct("u1", "image_processing")

    assert balance == 100
    _, count = await ledger.list_transactions("u1")
    assert count == 1


async def test_strict_mode_rejects_unpriced_service(session_factory):
    strict = CreditLedger(
        session_factory,
        CreditPricing(costs={"chat": 1}, strict_service_types=True),
    )

    with pytest.raises(LedgerValidationError):
        await strict.deduct("u1", "image_processing")


async def test_usage_scenario(ledger):
    assert await ledger.deduct("u1", "art_card") == 75

    for _ in range(30):
        await ledger.deduct("u1", "chat")
    assert await ledger.get_balance("u1") == 45

    assert await ledger.deduct("u1", "cover_generator") == 20

    with pytest.raises(InsufficientCredits) as exc_info:
        await ledger.deduct("u1", "cover_generator")
    assert exc_info.value.required == 25
    assert exc_info.value.balance == 20
    assert exc_info.value.error_code == "INSUFFICIENT_CREDITS"
    assert await ledger.get_balance("u1") == 20

    transactions, count = await ledger.list_transactions("u1", limit=100)
    # 初始积分 + 艺术卡片 + 30 次聊天 + 1 次封面
    assert count == 33
    chat_rows = [t for t in transactions if t.service_type == "chat"]
    assert len(chat_rows) == 30
    assert all(t.amount == -1 for t in chat_rows)
    assert await _used_credits(ledger._session_factory, "u1") == 80


async def test_deduct_description_uses_service_name(ledger):
    await ledger.deduct("u1", "image_generation")

    transactions, _ = await ledger.list_transactions("u1", limit=1)
    assert transactions[0].amount == -15
    assert transactions[0].description == "使用图片生成服务"
    assert transactions[0].balance_after == 85


async def test_concurrent_deductions_never_overdraw(ledger):
    # 余额 100，每次 25：5 个并发请求只能成功 4 个
    await ledger.get_balance("u1")

    results = await asyncio.gather(
        *[ledger.deduct("u1", "art_card") for _ in range(5)],
        return_exceptions=True,
    )

    successes = [r for r in results if isinstance(r, int)]
    failures = [r for r in results if isinstance(r, InsufficientCredits)]
    assert len(successes) == 4
    assert len(failures) == 1
    assert sorted(successes) == [0, 25, 50, 75]
    assert await ledger.get_balance("u1") == 0

    audit = await ledger.audit_balance("u1")
    assert audit.consistent


async def test_refund_after_deduct(ledger, session_factory):
    await ledger.deduct("u1", "image_generation")
    balance = await ledger.refund("u1", 7, "部分退款")

    assert balance == 100 - 15 + 7
    transactions, count = await ledger.list_transactions("u1")
    assert count == 3
    assert [t.amount for t in transactions[:2]] == [7, -15]
    assert transactions[0].service_type == "refund"
    assert transactions[0].description == "部分退款"
    assert await _used_credits(session_factory, "u1") == 15


async def test_refund_description_names_service(ledger):
    await ledger.deduct("u1", "image_editing")
    await ledger.refund("u1", 12, "处理失败", service_type="image_editing")

    transactions, _ = await ledger.list_transactions("u1", limit=1)
    assert transactions[0].description == "处理失败: 图片修改"


async def test_ledger_matches_balance_after_mixed_operations(ledger):
    await ledger.deduct("u1", "art_card")
    await ledger.grant_purchase("u1", 50, "pay-1")
    await ledger.refund("u1", 10, "补偿")
    with pytest.raises(InsufficientCredits):
        for _ in range(10):
            await ledger.deduct("u1", "cover_generator")

    audit = await ledger.audit_balance("u1")
    assert audit.consistent
    assert audit.cached_balance == await ledger.get_balance("u1")


async def test_transaction_pages_are_disjoint_and_newest_first(ledger):
    for _ in range(24):
        await ledger.deduct("u1", "chat")

    all_rows, total = await ledger.list_transactions("u1", limit=100)
    assert total == 25

    page0, count0 = await ledger.list_transactions("u1", limit=10, page=0)
    page1, _ = await ledger.list_transactions("u1", limit=10, page=1)
    page2, _ = await ledger.list_transactions("u1", limit=10, page=2)
    page3, _ = await ledger.list_transactions("u1", limit=10, page=3)

    assert count0 == 25
    assert [len(page0), len(page1), len(page2), len(page3)] == [10, 10, 5, 0]
    ids = [t.id for t in page0 + page1 + page2]
    assert ids == [t.id for t in all_rows]
    assert len(set(ids)) == 25
    # 最新的在前：最后一条是初始积分
    assert page0[0].balance_after == 76
    assert page2[-1].service_type == "system"


async def test_list_transactions_for_unknown_user_is_empty(ledger):
    transactions, count = await ledger.list_transactions("ghost")

    assert transactions == []
    assert count == 0


async def test_deduct_with_request_id_charges_once(ledger):
    first = await ledger.deduct("u1", "image_generation", request_id="req-1")
    second = await ledger.deduct("u1", "image_generation", request_id="req-1")

    assert first == second == 85
    assert await ledger.get_balance("u1") == 85


async def test_refund_with_deduction_request_id_is_applied(ledger):
    await ledger.deduct("u1", "image_generation", request_id="job-1")

    assert await ledger.refund("u1", 15, "生成失败", request_id="job-1") == 100
    assert await ledger.refund("u1", 15, "生成失败", request_id="job-1") == 100
    assert await ledger.get_balance("u1") == 100

    audit = await ledger.audit_balance("u1")
    assert audit.consistent


async def test_concurrent_duplicate_request_ids_charge_once(ledger):
    await ledger.get_balance("u1")

    results = await asyncio.gather(
        *[ledger.deduct("u1", "chat", request_id="req-dup") for _ in range(3)]
    )

    assert results == [99, 99, 99]
    assert await ledger.get_balance("u1") == 99
    _, count = await ledger.list_transactions("u1")
    assert count == 2


async def test_grant_purchase_is_idempotent_per_payment(ledger):
    assert await ledger.grant_purchase("u1", 200, "pay-1") == 300
    assert await ledger.grant_purchase("u1", 200, "pay-1") == 300
    assert await ledger.grant_purchase("u1", 50, "pay-2") == 350

    transactions, _ = await ledger.list_transactions("u1", limit=1)
    assert transactions[0].service_type == "purchase"
    assert transactions[0].description == "购买50积分"


@pytest.mark.parametrize("amount", [0, -5, 1.5, True])
async def test_invalid_amounts_are_rejected(ledger, amount):
    with pytest.raises(LedgerValidationError):
        await ledger.grant_purchase("u1", amount, "pay-x")
    with pytest.raises(LedgerValidationError):
        await ledger.refund("u1", amount, "退款")


async def test_missing_user_id_is_rejected(ledger):
    with pytest.raises(LedgerValidationError):
        await ledger.get_balance("")
    with pytest.raises(LedgerValidationError):
        await ledger.deduct("  ", "chat")


async def test_invalid_pagination_is_rejected(ledger):
    with pytest.raises(LedgerValidationError):
        await ledger.list_transactions("u1", limit=0)
    with pytest.raises(LedgerValidationError):
        await ledger.list_transactions("u1", page=-1)


async def test_has_sufficient_balance(ledger):
    assert await ledger.has_sufficient_balance("u1", 100)
    assert not await ledger.has_sufficient_balance("u1", 101)


async def test_has_sufficient_balance_rejects_bool(ledger):
    with pytest.raises(LedgerValidationError):
        await ledger.has_sufficient_balance("u1", True)


def test_partial_refund_amount(pricing):
    ledger = CreditLedger(session_factory=None, pricing=pricing)

    assert ledger.partial_refund_amount("image_generation") == 7
    assert ledger.partial_refund_amount("art_card", ratio=1) == 25
    assert ledger.partial_refund_amount("chat") == 0
    with pytest.raises(LedgerValidationError):
        ledger.partial_refund_amount("chat", ratio=1.5)


async def test_failed_log_write_rolls_back_deduction(engine, ledger, session_factory):
    await ledger.get_balance("u1")
    async with engine.begin() as conn:
        await conn.execute(text("DROP TABLE credit_transactions"))

    with pytest.raises(StorageError):
        await ledger.deduct("u1", "art_card")

    async with session_factory() as session:
        result = await session.execute(
            select(UserCredits.credits, UserCredits.used_credits)
            .where(UserCredits.user_id == "u1")
        )
        assert result.one() == (100, 0)


async def test_unavailable_storage_raises_storage_error(tmp_path, pricing):
    from hootool_credits.database import build_engine, build_sessionmaker

    bare_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
    try:
        bare = CreditLedger(build_sessionmaker(bare_engine), pricing)
        with pytest.raises(StorageError) as exc_info:
            await bare.get_balance("u1")
        assert exc_info.value.error_code == "STORAGE_ERROR"
    finally:
        await bare_engine.dispose()
