from unittest.mock import patch

import pytest

from genqueue.config.settings import LockBackend, Settings, get_settings


def test_default_settings():
    """Test default settings values."""
    settings = Settings()

    assert settings.app_name == "genqueue"
    assert settings.version == "1.0.0"
    assert settings.environment == "development"
    assert settings.lock_backend == LockBackend.DATABASE
    assert settings.default_job_priority == 10
    assert settings.job_max_attempts == 3
    assert settings.max_concurrent_jobs == 3
    assert settings.lock_ttl_s == 300
    assert settings.batch_size == 50
    assert settings.auto_batch_size == 20


def test_production_validation_blocks_memory_locks():
    """Test that production environment blocks LOCK_BACKEND=memory."""
    with pytest.raises(ValueError, match="LOCK_BACKEND=memory is not allowed in production"):
        Settings(environment="production", lock_backend=LockBackend.MEMORY)


def test_production_allows_database_locks():
    settings = Settings(environment="production", lock_backend=LockBackend.DATABASE)
    assert settings.lock_backend == LockBackend.DATABASE


def test_backoff_cap_must_cover_base():
    with pytest.raises(ValueError, match="JOB_MAX_BACKOFF_S"):
        Settings(job_backoff_base_s=120, job_max_backoff_s=60)


def test_is_sqlite():
    assert Settings(database_url="sqlite+aiosqlite:///./x.db").is_sqlite is True
    assert Settings(database_url="postgresql+asyncpg://u:p@db/q").is_sqlite is False


def test_settings_dependency_injection():
    """Test the get_settings dependency function."""
    settings = get_settings()
    assert isinstance(settings, Settings)
    assert settings.app_name == "genqueue"


@patch.dict("os.environ", {"LOCK_BACKEND": "memory", "MAX_CONCURRENT_JOBS": "5"})
def test_env_var_loading():
    """Test that environment variables are loaded correctly."""
    settings = Settings()
    assert settings.lock_backend == LockBackend.MEMORY
    assert settings.max_concurrent_jobs == 5
