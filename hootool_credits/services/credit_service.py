"""
积分服务 - 统一管理用户积分的查询、扣除、退款、购买和流水记录

此服务提供：
1. 原子性的积分扣除操作（条件更新，余额永不为负）
2. 余额变更与交易流水在同一个数据库事务中提交
3. 基于请求 ID 的幂等扣费、退款和购买入账
4. 预留 / 确认 / 释放的调用方辅助类
"""
import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import select, update, func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hootool_credits.config import Settings, get_settings
from hootool_credits.database import AsyncSessionLocal
from hootool_credits.models.credit import CreditTransaction, ServiceType, UserCredits
from hootool_credits.utils.metrics import record_credit_operation

logger = logging.getLogger(__name__)

INITIAL_GRANT_DESCRIPTION = "初始积分"

# 服务名称（用于交易描述展示）
SERVICE_DESCRIPTIONS: Dict[str, str] = {
    ServiceType.IMAGE_GENERATION.value: "图片生成",
    ServiceType.IMAGE_EDITING.value: "图片修改",
    ServiceType.ART_CARD.value: "艺术卡片生成",
    ServiceType.COVER_GENERATOR.value: "封面生成",
    ServiceType.CHAT.value: "智能聊天",
}

MAX_USER_ID_LENGTH = 64
MAX_REQUEST_ID_LENGTH = 128


class CreditOperationError(Exception):
    """积分操作异常"""
    def __init__(self, message: str, error_code: str = "CREDIT_ERROR"):
        self.message = message
        self.error_code = error_code
        super().__init__(message)


class InsufficientCredits(CreditOperationError):
    """余额不足，扣费被拒绝且余额未变"""
    def __init__(self, required: int, balance: int):
        self.required = required
        self.balance = balance
        super().__init__(
            f"积分不足，需要 {required} 积分，当前余额 {balance}",
            "INSUFFICIENT_CREDITS",
        )


class LedgerValidationError(CreditOperationError):
    """参数不合法，未触及存储"""
    def __init__(self, message: str, error_code: str = "INVALID_REQUEST"):
        super().__init__(message, error_code)


class StorageError(CreditOperationError):
    """存储不可用，操作未提交"""
    def __init__(self, message: str = "积分存储不可用"):
        super().__init__(message, "STORAGE_ERROR")


class _RequestConflict(Exception):
    """同一幂等键的并发请求已先一步提交"""


@dataclass(frozen=True)
class CreditPricing:
    """积分计费策略"""
    costs: Mapping[str, int] = field(default_factory=dict)
    initial_grant: int = 100
    fallback_refund_ratio: float = 0.5
    strict_service_types: bool = False

    def __post_init__(self) -> None:
        for service_type, cost in self.costs.items():
            if not isinstance(cost, int) or isinstance(cost, bool) or cost < 0:
                raise ValueError(f"invalid cost for {service_type}: {cost!r}")
        if self.initial_grant < 0:
            raise ValueError("initial_grant must not be negative")
        if not 0 < self.fallback_refund_ratio <= 1:
            raise ValueError("fallback_refund_ratio must be in (0, 1]")

    @classmethod
    def from_settings(cls, settings: Settings) -> "CreditPricing":
        return cls(
            costs={
                ServiceType.IMAGE_GENERATION.value: settings.credits_image_generation,
                ServiceType.IMAGE_EDITING.value: settings.credits_image_editing,
                ServiceType.ART_CARD.value: settings.credits_art_card,
                ServiceType.COVER_GENERATOR.value: settings.credits_cover_generator,
                ServiceType.CHAT.value: settings.credits_chat,
            },
            initial_grant=settings.credits_initial_grant,
            fallback_refund_ratio=settings.credits_fallback_refund_ratio,
            strict_service_types=settings.credits_strict_service_types,
        )

    def cost_of(self, service_type: str) -> int:
        """未定价的服务类型费用为 0"""
        return int(self.costs.get(service_type, 0))

    def is_priced(self, service_type: str) -> bool:
        return service_type in self.costs


@dataclass(frozen=True)
class BalanceAudit:
    """余额与流水核对结果"""
    user_id: str
    cached_balance: int
    ledger_total: int

    @property
    def consistent(self) -> bool:
        return self.cached_balance == self.ledger_total


def _service_value(service_type) -> str:
    if isinstance(service_type, ServiceType):
        return service_type.value
    return service_type


def _validate_user_id(user_id: str) -> None:
    if not isinstance(user_id, str) or not user_id.strip():
        raise LedgerValidationError("缺少用户ID")
    if len(user_id) > MAX_USER_ID_LENGTH:
        raise LedgerValidationError("用户ID过长")


def _validate_amount(amount: int) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool):
        raise LedgerValidationError("积分数量必须是整数", "INVALID_AMOUNT")
    if amount <= 0:
        raise LedgerValidationError("积分数量必须大于0", "INVALID_AMOUNT")


def _validate_request_id(request_id: Optional[str]) -> None:
    if request_id is None:
        return
    if not isinstance(request_id, str) or not request_id.strip():
        raise LedgerValidationError("请求ID不能为空")
    if len(request_id) > MAX_REQUEST_ID_LENGTH:
        raise LedgerValidationError("请求ID过长")


def _scoped_request_id(operation: str, request_id: Optional[str]) -> Optional[str]:
    """幂等键按操作隔离，扣费与退款不会互相命中"""
    if request_id is None:
        return None
    _validate_request_id(request_id)
    scoped = f"{operation}:{request_id}"
    _validate_request_id(scoped)
    return scoped


class CreditLedger:
    """
    积分账本

    每个操作使用独立的会话和事务：余额写入与流水追加要么一起提交，
    要么一起回滚。方法返回即代表结果已持久化。

    使用方式:
        ledger = CreditLedger(AsyncSessionLocal)
        try:
            await ledger.deduct(user_id, "image_generation")
        except InsufficientCredits:
            ...  # 返回 402，不调用外部 AI 接口
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        pricing: Optional[CreditPricing] = None,
    ):
        self._session_factory = session_factory
        self.pricing = pricing or CreditPricing.from_settings(get_settings())

    # ------------------------------------------------------------------
    # 事务与存储辅助
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _unit_of_work(
        self,
        operation: str,
        request_id: Optional[str] = None,
    ) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except IntegrityError as exc:
            if request_id is not None:
                raise _RequestConflict(request_id) from exc
            logger.error("Credit %s violated a constraint: %s", operation, exc, exc_info=True)
            record_credit_operation(operation, "storage_error")
            raise StorageError() from exc
        except (SQLAlchemyError, OSError) as exc:
            logger.error("Credit %s failed in storage: %s", operation, exc, exc_info=True)
            record_credit_operation(operation, "storage_error")
            raise StorageError() from exc

    def _insert(self, session: AsyncSession):
        dialect = session.get_bind().dialect.name
        if dialect == "sqlite":
            return sqlite_insert
        return pg_insert

    async def _ensure_account(self, session: AsyncSession, user_id: str) -> bool:
        """
        确保账户存在；只有真正创建账户的写入方才记录初始积分流水

        Returns:
            是否由本次调用创建
        """
        now = datetime.utcnow()
        grant = self.pricing.initial_grant
        stmt = (
            self._insert(session)(UserCredits)
            .values(
                user_id=user_id,
                credits=grant,
                used_credits=0,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=[UserCredits.user_id])
            .returning(UserCredits.user_id)
        )
        result = await session.execute(stmt)
        created = result.scalar_one_or_none() is not None
        if created and grant > 0:
            session.add(CreditTransaction(
                user_id=user_id,
                amount=grant,
                description=INITIAL_GRANT_DESCRIPTION,
                service_type=ServiceType.SYSTEM.value,
                balance_after=grant,
            ))
        if created:
            logger.info("Created credit account user=%s initial=%s", user_id, grant)
            record_credit_operation("initial_grant", "success", grant)
        return created

    async def _current_credits(self, session: AsyncSession, user_id: str) -> Optional[int]:
        result = await session.execute(
            select(UserCredits.credits).where(UserCredits.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def _find_request(
        self,
        session: AsyncSession,
        user_id: str,
        request_id: str,
    ) -> Optional[CreditTransaction]:
        result = await session.execute(
            select(CreditTransaction).where(
                CreditTransaction.user_id == user_id,
                CreditTransaction.request_id == request_id,
            )
        )
        return result.scalar_one_or_none()

    async def _replay(self, user_id: str, request_id: str, operation: str) -> int:
        """并发重复请求落败后，返回先提交那次的结果"""
        async with self._unit_of_work(operation) as session:
            existing = await self._find_request(session, user_id, request_id)
        if existing is None:
            raise StorageError("幂等记录读取失败")
        logger.info("Replayed credit %s user=%s request=%s", operation, user_id, request_id)
        record_credit_operation(operation, "replayed")
        return existing.balance_after

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    def required_credits(self, service_type) -> int:
        """根据服务类型获取所需积分"""
        return self.pricing.cost_of(_service_value(service_type))

    def partial_refund_amount(self, service_type, ratio: Optional[float] = None) -> int:
        """按比例计算部分退款（向下取整）"""
        if ratio is None:
            ratio = self.pricing.fallback_refund_ratio
        if not 0 < ratio <= 1:
            raise LedgerValidationError("退款比例必须在 (0, 1] 之间")
        return int(self.required_credits(service_type) * ratio)

    async def get_balance(self, user_id: str) -> int:
        """获取用户积分余额，账户不存在时自动创建并发放初始积分"""
        _validate_user_id(user_id)
        async with self._unit_of_work("get_balance") as session:
            credits = await self._current_credits(session, user_id)
            if credits is None:
                await self._ensure_account(session, user_id)
                credits = await self._current_credits(session, user_id)
        return int(credits)

    async def get_account(self, user_id: str) -> Tuple[int, int]:
        """获取 (余额, 累计消耗)，同样会懒创建账户"""
        _validate_user_id(user_id)
        stmt = select(UserCredits.credits, UserCredits.used_credits).where(
            UserCredits.user_id == user_id
        )
        async with self._unit_of_work("get_balance") as session:
            row = (await session.execute(stmt)).one_or_none()
            if row is None:
                await self._ensure_account(session, user_id)
                row = (await session.execute(stmt)).one()
        credits, used_credits = row
        return int(credits), int(used_credits)

    async def has_sufficient_balance(self, user_id: str, required_amount: int) -> bool:
        """检查用户是否有足够的积分进行操作"""
        if not isinstance(required_amount, int) or isinstance(required_amount, bool) or required_amount < 0:
            raise LedgerValidationError("所需积分必须是非负整数", "INVALID_AMOUNT")
        return await self.get_balance(user_id) >= required_amount

    async def list_transactions(
        self,
        user_id: str,
        limit: int = 10,
        page: int = 0,
    ) -> Tuple[List[CreditTransaction], int]:
        """获取用户积分交易历史（按时间倒序，page 从 0 开始）"""
        _validate_user_id(user_id)
        if not isinstance(limit, int) or limit < 1:
            raise LedgerValidationError("每页条数必须大于0")
        if not isinstance(page, int) or page < 0:
            raise LedgerValidationError("页码不能为负数")

        async with self._unit_of_work("list_transactions") as session:
            count_result = await session.execute(
                select(func.count(CreditTransaction.id)).where(
                    CreditTransaction.user_id == user_id
                )
            )
            total = count_result.scalar() or 0

            result = await session.execute(
                select(CreditTransaction)
                .where(CreditTransaction.user_id == user_id)
                .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
                .offset(page * limit)
                .limit(limit)
            )
            transactions = list(result.scalars().all())
        return transactions, int(total)

    async def audit_balance(self, user_id: str) -> BalanceAudit:
        """核对缓存余额与流水合计"""
        _validate_user_id(user_id)
        async with self._unit_of_work("audit_balance") as session:
            cached = await self._current_credits(session, user_id)
            total_result = await session.execute(
                select(func.coalesce(func.sum(CreditTransaction.amount), 0))
                .where(CreditTransaction.user_id == user_id)
            )
            ledger_total = total_result.scalar()
        audit = BalanceAudit(
            user_id=user_id,
            cached_balance=int(cached or 0),
            ledger_total=int(ledger_total or 0),
        )
        if not audit.consistent:
            logger.warning(
                "Credit ledger drift user=%s cached=%s ledger=%s",
                user_id, audit.cached_balance, audit.ledger_total,
            )
        return audit

    # ------------------------------------------------------------------
    # 变更
    # ------------------------------------------------------------------

    async def deduct(
        self,
        user_id: str,
        service_type,
        request_id: Optional[str] = None,
    ) -> int:
        """
        扣除用户积分（原子操作）

        Args:
            user_id: 用户 ID
            service_type: 服务类型，决定扣费金额
            request_id: 幂等键，同一键重复调用只扣一次

        Returns:
            扣除后的余额

        Raises:
            InsufficientCredits: 余额不足，余额保持不变
            LedgerValidationError: 参数不合法
            StorageError: 存储失败，扣费未发生
        """
        _validate_user_id(user_id)
        request_id = _scoped_request_id("deduct", request_id)
        service_type = _service_value(service_type)
        if not isinstance(service_type, str) or not service_type:
            raise LedgerValidationError("缺少服务类型")

        cost = self.required_credits(service_type)
        if cost <= 0:
            if self.pricing.strict_service_types and not self.pricing.is_priced(service_type):
                raise LedgerValidationError(f"未知的服务类型: {service_type}")
            logger.debug("No charge for service=%s user=%s", service_type, user_id)
            return await self.get_balance(user_id)

        try:
            balance_after = await self._deduct_once(user_id, service_type, cost, request_id)
        except _RequestConflict:
            return await self._replay(user_id, request_id, "deduct")
        except InsufficientCredits as exc:
            logger.warning(
                "Insufficient credits user=%s service=%s required=%s balance=%s",
                user_id, service_type, exc.required, exc.balance,
            )
            record_credit_operation("deduct", "insufficient")
            raise
        return balance_after

    async def _deduct_once(
        self,
        user_id: str,
        service_type: str,
        cost: int,
        request_id: Optional[str],
    ) -> int:
        async with self._unit_of_work("deduct", request_id) as session:
            if request_id is not None:
                existing = await self._find_request(session, user_id, request_id)
                if existing is not None:
                    logger.info("Replayed credit deduct user=%s request=%s", user_id, request_id)
                    record_credit_operation("deduct", "replayed")
                    return existing.balance_after

            await self._ensure_account(session, user_id)

            result = await session.execute(
                update(UserCredits)
                .where(UserCredits.user_id == user_id, UserCredits.credits >= cost)
                .values(
                    credits=UserCredits.credits - cost,
                    used_credits=UserCredits.used_credits + cost,
                    updated_at=datetime.utcnow(),
                )
                .returning(UserCredits.credits)
                .execution_options(synchronize_session=False)
            )
            balance_after = result.scalar_one_or_none()

            if balance_after is None:
                current = await self._current_credits(session, user_id)
                raise InsufficientCredits(cost, int(current or 0))

            name = SERVICE_DESCRIPTIONS.get(service_type, service_type)
            session.add(CreditTransaction(
                user_id=user_id,
                amount=-cost,
                description=f"使用{name}服务",
                service_type=service_type,
                balance_after=balance_after,
                request_id=request_id,
            ))
            await session.flush()

        logger.info(
            "Deducted credits user=%s service=%s cost=%s balance=%s",
            user_id, service_type, cost, balance_after,
        )
        record_credit_operation("deduct", "success", -cost)
        return balance_after

    async def _credit(
        self,
        operation: str,
        user_id: str,
        amount: int,
        description: str,
        service_type: str,
        request_id: Optional[str],
    ) -> int:
        """增加积分并追加流水，不触碰累计消耗"""
        try:
            async with self._unit_of_work(operation, request_id) as session:
                if request_id is not None:
                    existing = await self._find_request(session, user_id, request_id)
                    if existing is not None:
                        logger.info("Replayed credit %s user=%s request=%s", operation, user_id, request_id)
                        record_credit_operation(operation, "replayed")
                        return existing.balance_after

                await self._ensure_account(session, user_id)

                result = await session.execute(
                    update(UserCredits)
                    .where(UserCredits.user_id == user_id)
                    .values(
                        credits=UserCredits.credits + amount,
                        updated_at=datetime.utcnow(),
                    )
                    .returning(UserCredits.credits)
                    .execution_options(synchronize_session=False)
                )
                balance_after = result.scalar_one()

                session.add(CreditTransaction(
                    user_id=user_id,
                    amount=amount,
                    description=description,
                    service_type=service_type,
                    balance_after=balance_after,
                    request_id=request_id,
                ))
                await session.flush()
        except _RequestConflict:
            return await self._replay(user_id, request_id, operation)

        logger.info(
            "Credited %s user=%s amount=%s balance=%s",
            operation, user_id, amount, balance_after,
        )
        record_credit_operation(operation, "success", amount)
        return balance_after

    async def refund(
        self,
        user_id: str,
        amount: int,
        reason: str,
        service_type=None,
        request_id: Optional[str] = None,
    ) -> int:
        """
        退还积分（付费调用失败后的补偿）

        累计消耗 used_credits 记录的是总消耗，退款不会回退它。

        Returns:
            退款后的余额
        """
        _validate_user_id(user_id)
        _validate_amount(amount)
        request_id = _scoped_request_id("refund", request_id)
        reason = (reason or "").strip() or "退款"
        description = reason
        if service_type is not None:
            service_type = _service_value(service_type)
            description = f"{reason}: {SERVICE_DESCRIPTIONS.get(service_type, service_type)}"
        return await self._credit(
            "refund", user_id, amount, description, ServiceType.REFUND.value, request_id,
        )

    async def grant_purchase(
        self,
        user_id: str,
        amount: int,
        payment_reference: Optional[str] = None,
    ) -> int:
        """
        支付确认后为用户添加积分

        payment_reference 作为幂等键，同一笔支付不会重复入账。

        Returns:
            入账后的余额
        """
        _validate_user_id(user_id)
        _validate_amount(amount)
        request_id = _scoped_request_id("purchase", payment_reference)
        return await self._credit(
            "purchase", user_id, amount, f"购买{amount}积分", ServiceType.PURCHASE.value, request_id,
        )


class CreditReservation:
    """
    先扣后退的调用方辅助类

    使用方式:
        reservation = CreditReservation(ledger, user_id, "image_generation")
        await reservation.reserve()
        # ... 调用外部 AI 接口 ...
        if success:
            reservation.confirm()
        else:
            await reservation.release("生成失败", ratio=0.5)

    也可以作为异步上下文管理器使用，块内抛出异常时全额退还。
    """

    def __init__(
        self,
        ledger: CreditLedger,
        user_id: str,
        service_type,
        request_id: Optional[str] = None,
    ):
        self.ledger = ledger
        self.user_id = user_id
        self.service_type = _service_value(service_type)
        self.request_id = request_id
        self._reserved = False
        self._cost = 0
        self._balance_after: Optional[int] = None

    async def reserve(self) -> int:
        """扣除本次服务费用，返回扣除后的余额"""
        if self._reserved:
            raise LedgerValidationError("积分已预留")
        self._cost = self.ledger.required_credits(self.service_type)
        self._balance_after = await self.ledger.deduct(
            self.user_id, self.service_type, request_id=self.request_id,
        )
        self._reserved = self._cost > 0
        return self._balance_after

    def confirm(self) -> None:
        """确认扣费，之后 release 不再退款"""
        self._reserved = False

    async def release(self, reason: str, ratio: Optional[float] = None) -> Optional[int]:
        """
        退还已预留的积分（幂等，多次调用只退一次）

        Args:
            reason: 退款原因（用于审计）
            ratio: 部分退款比例，None 表示全额退款

        Returns:
            退款后的余额；没有需要退还的积分时返回 None
        """
        if not self._reserved:
            return None
        if ratio is None:
            amount = self._cost
        else:
            amount = self.ledger.partial_refund_amount(self.service_type, ratio)
        if amount <= 0:
            self._reserved = False
            return None
        refund_request_id = f"{self.request_id}:release" if self.request_id else None
        self._balance_after = await self.ledger.refund(
            self.user_id, amount, reason,
            service_type=self.service_type,
            request_id=refund_request_id,
        )
        # 退款落库后才清除预留标记，存储失败时允许重试
        self._reserved = False
        return self._balance_after

    @property
    def is_reserved(self) -> bool:
        """是否已预留积分"""
        return self._reserved

    @property
    def cost(self) -> int:
        return self._cost

    @property
    def balance_after(self) -> Optional[int]:
        """最近一次操作后的余额"""
        return self._balance_after

    async def __aenter__(self) -> "CreditReservation":
        await self.reserve()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc_type is not None:
            await self.release("服务调用失败")
        else:
            self.confirm()
        return False


@lru_cache()
def get_credit_ledger() -> CreditLedger:
    """获取应用级账本实例（FastAPI 依赖）"""
    return CreditLedger(AsyncSessionLocal, CreditPricing.from_settings(get_settings()))
