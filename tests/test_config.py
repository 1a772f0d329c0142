import pytest

from hootool_credits.config import Settings


def test_async_database_url_uses_async_drivers():
    pg = Settings(database_url="postgresql://u:p@db:5432/hootool")
    lite = Settings(database_url="sqlite:///./credits.db")

    assert pg.async_database_url == "postgresql+asyncpg://u:p@db:5432/hootool"
    assert lite.async_database_url == "sqlite+aiosqlite:///./credits.db"


def test_production_rejects_default_jwt_secret():
    settings = Settings(environment="production")

    with pytest.raises(RuntimeError):
        settings.validate_secrets()


def test_production_accepts_strong_settings():
    settings = Settings(environment="production", supabase_jwt_secret="x" * 40)

    settings.validate_secrets()


def test_cors_origins_are_split():
    settings = Settings(cors_origins_list="https://a.example, https://b.example")

    assert settings.cors_origins == ["https://a.example", "https://b.example"]
