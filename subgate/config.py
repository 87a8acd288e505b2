from dataclasses import dataclass, field
import os
from dotenv import load_dotenv

from subgate.services.exceptions import ConfigError

load_dotenv()

def _parse_admin_ids(raw: str) -> set[int]:
    return {int(x.strip()) for x in raw.split(",") if x.strip()}

@dataclass(frozen=True)
class Settings:
    bot_token: str = os.getenv("BOT_TOKEN", "")
    # id канала/группы, например -1001234567890
    channel_id: str = os.getenv("CHANNEL_ID", "")
    use_fake_db: bool = os.getenv("USE_FAKE_DB", "1") == "1"
    tz: str = os.getenv("TZ", "Europe/Kyiv")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    admin_ids: set[int] = field(default_factory=lambda: _parse_admin_ids(os.getenv("ADMIN_IDS", "")))

    # Postgres
    pg_host: str = os.getenv("PG_HOST", "localhost")
    pg_port: int = int(os.getenv("PG_PORT", "5432"))
    pg_user: str = os.getenv("PG_USER", "postgres")
    pg_password: str = os.getenv("PG_PASSWORD", "")
    pg_database: str = os.getenv("PG_DATABASE", "postgres")
    pg_sslmode: str = os.getenv("PG_SSLMODE", "disable")

    # MonoPay
    monopay_token: str = os.getenv("MONOPAY_TOKEN", "")
    monopay_ccy: int = int(os.getenv("MONOPAY_CCY", "980"))  # 980 = UAH
    monopay_timeout_sec: float = float(os.getenv("MONOPAY_TIMEOUT_SEC", "15"))
    # куда вернуть пользователя после оплаты, обычно https://t.me/<bot>
    monopay_redirect_url: str = os.getenv("MONOPAY_REDIRECT_URL", "")

    # Планировщик
    payments_poll_minutes: int = int(os.getenv("PAYMENTS_POLL_MINUTES", "2"))
    unpaid_audit_minutes: int = int(os.getenv("UNPAID_AUDIT_MINUTES", "60"))

    @property
    def pg_dsn(self) -> str:
        return (
            f"postgresql://{self.pg_user}:{self.pg_password}"
            f"@{self.pg_host}:{self.pg_port}/{self.pg_database}"
            f"?sslmode={self.pg_sslmode}"
        )

    def is_admin(self, user_id: int | None) -> bool:
        return user_id is not None and user_id in self.admin_ids

    def validate(self) -> None:
        """Падаем на старте, если не хватает обязательных переменных."""
        missing = []
        if not self.bot_token:
            missing.append("BOT_TOKEN")
        if not self.channel_id:
            missing.append("CHANNEL_ID")
        if not self.monopay_token:
            missing.append("MONOPAY_TOKEN")
        if not self.use_fake_db:
            for name, value in (
                ("PG_HOST", self.pg_host),
                ("PG_USER", self.pg_user),
                ("PG_PASSWORD", self.pg_password),
                ("PG_DATABASE", self.pg_database),
            ):
                if not value:
                    missing.append(name)
        if missing:
            raise ConfigError(f"Missing required env variables: {', '.join(missing)}")

settings = Settings()
