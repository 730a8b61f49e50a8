import pytest

from yieldtrace.config import DEFAULT_EMISSION_TOKEN_ADDRESS, DEFAULT_LP_TOKEN_ADDRESS, load_settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("DATABASE_URL", "REDIS_URL", "DB_POOL_MIN", "DB_POOL_MAX", "MAX_CONCURRENT_READS",
                 "QUERY_TIMEOUT_SECONDS", "STRICT_INVARIANTS", "LP_TOKEN_ADDRESS", "EMISSION_TOKEN_ADDRESS",
                 "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("yieldtrace.config.load_dotenv", lambda: False)


def test_defaults():
    settings = load_settings()
    assert settings.database_url is None
    assert settings.max_concurrent_reads == 8
    assert settings.lp_token_address == DEFAULT_LP_TOKEN_ADDRESS
    assert settings.emission_token_address == DEFAULT_EMISSION_TOKEN_ADDRESS
    assert settings.strict_invariants is False


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/yield")
    monkeypatch.setenv("QUERY_TIMEOUT_SECONDS", "2.5")
    monkeypatch.setenv("STRICT_INVARIANTS", "true")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    settings = load_settings()
    assert settings.database_url == "postgresql://localhost/yield"
    assert settings.query_timeout_seconds == 2.5
    assert settings.strict_invariants is True
    assert settings.log_level == "DEBUG"


@pytest.mark.parametrize("name,value", [
    ("MAX_CONCURRENT_READS", "many"),
    ("MAX_CONCURRENT_READS", "0"),
    ("QUERY_TIMEOUT_SECONDS", "-1"),
])
def test_invalid_values_name_the_variable(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError, match=name):
        load_settings()


def test_pool_bounds_checked(monkeypatch):
    monkeypatch.setenv("DB_POOL_MIN", "5")
    monkeypatch.setenv("DB_POOL_MAX", "2")
    with pytest.raises(ValueError, match="DB_POOL_MIN"):
        load_settings()
