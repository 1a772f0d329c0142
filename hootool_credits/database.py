"""
数据库连接模块
"""
import asyncio
import logging
from pathlib import Path
from alembic import command
from alembic.config import Config
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from hootool_credits.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """根据连接串创建异步引擎"""
    if database_url.startswith("sqlite"):
        # SQLite 写锁竞争时等待而不是立即报错
        return create_async_engine(
            database_url,
            echo=echo,
            connect_args={"timeout": 30},
        )
    return create_async_engine(
        database_url,
        echo=echo,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
    )


def build_sessionmaker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine(settings.async_database_url, echo=settings.database_echo)

AsyncSessionLocal = build_sessionmaker(engine)


class Base(DeclarativeBase):
    """SQLAlchemy 基类"""
    pass


def run_migrations() -> None:
    """运行 Alembic 数据库迁移"""
    config_path = Path(__file__).resolve().parents[1] / "alembic.ini"
    alembic_cfg = Config(str(config_path))
    command.upgrade(alembic_cfg, "head")


async def create_tables(bind: AsyncEngine) -> None:
    """按模型元数据建表（测试与首次启动使用）"""
    from hootool_credits.models import credit  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db():
    """初始化数据库表"""
    await create_tables(engine)

    # 运行 Alembic 迁移（处理增量变更）
    if settings.async_database_url.startswith("postgresql"):
        await asyncio.to_thread(run_migrations)
    logger.info("Database initialised")
