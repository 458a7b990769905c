import pytest
from pydantic import ValidationError

from tenantauth.config import Settings, get_settings, reset_settings_cache


@pytest.fixture(autouse=True)
def clean_settings_cache():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def isolated_env(monkeypatch, tmp_path):
    # keep a developer .env out of the picture
    monkeypatch.chdir(tmp_path)
    return monkeypatch


def test_missing_jwt_secret_is_fatal(isolated_env):
    isolated_env.delenv("JWT_SECRET", raising=False)
    with pytest.raises(ValidationError):
        Settings.from_env()


def test_blank_jwt_secret_is_fatal():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="   ")


def test_short_jwt_secret_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="too-short")


def test_from_env_reads_environment(isolated_env):
    isolated_env.setenv("JWT_SECRET", "environment-secret-value-1234")
    isolated_env.setenv("ACCESS_TOKEN_TTL_MINUTES", "30")
    isolated_env.setenv("USE_MEMORY_STORE", "true")
    isolated_env.setenv("STORE_TIMEOUT_SECONDS", "2.5")

    settings = Settings.from_env()

    assert settings.jwt_secret == "environment-secret-value-1234"
    assert settings.access_token_ttl_minutes == 30
    assert settings.use_memory_store is True
    assert settings.store_timeout_seconds == 2.5


def test_from_env_falls_back_to_dotenv_file(isolated_env, tmp_path):
    isolated_env.delenv("JWT_SECRET", raising=False)
    isolated_env.delenv("JWT_ISSUER", raising=False)
    (tmp_path / ".env").write_text(
        "JWT_SECRET=dotenv-secret-value-123456\nJWT_ISSUER=dotenv-issuer\n"
    )

    settings = Settings.from_env()

    assert settings.jwt_secret == "dotenv-secret-value-123456"
    assert settings.jwt_issuer == "dotenv-issuer"


def test_environment_wins_over_dotenv(isolated_env, tmp_path):
    (tmp_path / ".env").write_text("JWT_SECRET=dotenv-secret-value-123456\n")
    isolated_env.setenv("JWT_SECRET", "environment-secret-value-1234")

    assert Settings.from_env().jwt_secret == "environment-secret-value-1234"


def test_defaults():
    settings = Settings(jwt_secret="default-check-secret-123456")

    assert settings.access_token_ttl_minutes == 24 * 60
    assert settings.refresh_token_ttl_minutes == 7 * 24 * 60
    assert settings.jwt_leeway_seconds == 0
    assert settings.session_sweep_interval_seconds == 60 * 60


@pytest.mark.parametrize(
    "field",
    ["access_token_ttl_minutes", "refresh_token_ttl_minutes", "session_sweep_interval_seconds"],
)
def test_non_positive_durations_rejected(field):
    with pytest.raises(ValidationError):
        Settings(jwt_secret="default-check-secret-123456", **{field: 0})


def test_get_settings_is_cached(isolated_env):
    isolated_env.setenv("JWT_SECRET", "environment-secret-value-1234")
    first = get_settings()
    assert get_settings() is first

    reset_settings_cache()
    assert get_settings() is not first
