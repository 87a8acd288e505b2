import pytest

from subgate.config import Settings, _parse_admin_ids
from subgate.services.exceptions import ConfigError, SubgateError


def test_parse_admin_ids():
    assert _parse_admin_ids("1, 2,,3 ") == {1, 2, 3}
    assert _parse_admin_ids("") == set()


def test_validate_lists_missing_variables():
    s = Settings(bot_token="", channel_id="", monopay_token="")

    with pytest.raises(ConfigError) as exc:
        s.validate()

    assert isinstance(exc.value, SubgateError)
    for name in ("BOT_TOKEN", "CHANNEL_ID", "MONOPAY_TOKEN"):
        assert name in str(exc.value)


def test_validate_passes_with_required_values():
    Settings(bot_token="123:abc", channel_id="-100123", monopay_token="tok", use_fake_db=True).validate()


def test_validate_requires_postgres_settings_without_fake_db():
    s = Settings(
        bot_token="123:abc",
        channel_id="-100123",
        monopay_token="tok",
        use_fake_db=False,
        pg_host="db",
        pg_user="",
        pg_password="",
        pg_database="subs",
    )

    with pytest.raises(ConfigError) as exc:
        s.validate()

    assert "PG_USER" in str(exc.value)
    assert "PG_PASSWORD" in str(exc.value)
    assert "PG_HOST" not in str(exc.value)


def test_validate_accepts_full_postgres_settings():
    Settings(
        bot_token="123:abc",
        channel_id="-100123",
        monopay_token="tok",
        use_fake_db=False,
        pg_host="db",
        pg_user="bot",
        pg_password="secret",
        pg_database="subs",
    ).validate()


def test_is_admin_and_dsn():
    s = Settings(
        admin_ids={10, 20},
        pg_user="bot",
        pg_password="secret",
        pg_host="db",
        pg_port=5433,
        pg_database="subs",
        pg_sslmode="require",
    )

    assert s.is_admin(10)
    assert not s.is_admin(30)
    assert not s.is_admin(None)
    assert s.pg_dsn == "postgresql://bot:secret@db:5433/subs?sslmode=require"
