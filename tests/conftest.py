import os

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest

from hootool_credits.database import build_engine, build_sessionmaker, create_tables
from hootool_credits.services.credit_service import CreditLedger, CreditPricing


TEST_COSTS = {
    "image_generation": 15,
    "image_editing": 12,
    "art_card": 25,
    "cover_generator": 25,
    "chat": 1,
}


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def engine(tmp_path):
    db_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await create_tables(db_engine)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_sessionmaker(engine)


@pytest.fixture
def pricing():
    return CreditPricing(costs=dict(TEST_COSTS), initial_grant=100, fallback_refund_ratio=0.5)


@pytest.fixture
def ledger(session_factory, pricing):
    return CreditLedger(session_factory, pricing)
