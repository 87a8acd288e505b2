from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from subgate.db.models import Payment, PaymentValidation, Subscription, UserInfo, ReminderInfo

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS payments (
    id BIGSERIAL PRIMARY KEY,
    invoice_id TEXT NOT NULL UNIQUE,
    telegram_user_id BIGINT NOT NULL,
    plan_code TEXT NOT NULL,
    amount INTEGER NOT NULL,
    status TEXT NOT NULL,
    created_at BIGINT NOT NULL,
    paid_at BIGINT
);

CREATE TABLE IF NOT EXISTS payment_validations (
    invoice_id TEXT PRIMARY KEY,
    telegram_user_id BIGINT NOT NULL,
    plan_code TEXT NOT NULL,
    paid_at BIGINT NOT NULL,
    deadline_at BIGINT NOT NULL,
    status TEXT NOT NULL,
    confirmed_at BIGINT,
    join_at BIGINT
);

CREATE TABLE IF NOT EXISTS subscriptions (
    id BIGSERIAL PRIMARY KEY,
    telegram_user_id BIGINT NOT NULL,
    chat_id TEXT NOT NULL,
    plan_code TEXT NOT NULL,
    start_at BIGINT NOT NULL,
    end_at BIGINT NOT NULL,
    active BOOLEAN NOT NULL DEFAULT TRUE,
    closed_at BIGINT
);
ALTER TABLE subscriptions ADD COLUMN IF NOT EXISTS closed_at BIGINT;

-- не больше одной активной подписки на (пользователь, канал)
CREATE UNIQUE INDEX IF NOT EXISTS uq_subscriptions_active
    ON subscriptions (telegram_user_id, chat_id) WHERE active;
CREATE INDEX IF NOT EXISTS idx_subscriptions_end ON subscriptions (end_at);
CREATE INDEX IF NOT EXISTS idx_payments_user ON payments (telegram_user_id);
CREATE INDEX IF NOT EXISTS idx_validations_user ON payment_validations (telegram_user_id);

CREATE TABLE IF NOT EXISTS users (
    telegram_user_id BIGINT PRIMARY KEY,
    username TEXT,
    first_name TEXT,
    last_name TEXT,
    updated_at BIGINT NOT NULL
);

CREATE TABLE IF NOT EXISTS user_channel_joins (
    telegram_user_id BIGINT NOT NULL,
    chat_id TEXT NOT NULL,
    last_join_at BIGINT NOT NULL,
    PRIMARY KEY (telegram_user_id, chat_id)
);

CREATE TABLE IF NOT EXISTS reminders_non_subscribed (
    telegram_user_id BIGINT PRIMARY KEY,
    last_sent_at BIGINT NOT NULL,
    send_count INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS expiry_reminders (
    subscription_id BIGINT NOT NULL,
    days_before_expiry INTEGER NOT NULL,
    sent_at BIGINT NOT NULL,
    PRIMARY KEY (subscription_id, days_before_expiry)
);
"""

@dataclass
class FakeDatabase:
    payments: Dict[str, Payment] = field(default_factory=dict)  # key = invoice_id
    validations: Dict[str, PaymentValidation] = field(default_factory=dict)  # key = invoice_id
    subscriptions: Dict[int, Subscription] = field(default_factory=dict)  # key = id
    users: Dict[int, UserInfo] = field(default_factory=dict)
    channel_joins: Dict[Tuple[int, str], int] = field(default_factory=dict)
    reminders: Dict[int, ReminderInfo] = field(default_factory=dict)
    expiry_reminders: Dict[Tuple[int, int], int] = field(default_factory=dict)
    _payment_id_seq: int = 0
    _subscription_id_seq: int = 0

    def next_payment_id(self) -> int:
        self._payment_id_seq += 1
        return self._payment_id_seq

    def next_subscription_id(self) -> int:
        self._subscription_id_seq += 1
        return self._subscription_id_seq

    def sorted_payments(self) -> List[Payment]:
        return sorted(self.payments.values(), key=lambda p: (p.created_at, p.id or 0))


async def init_schema(pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute(SCHEMA_SQL)


async def get_db(use_fake: bool, dsn: str):
    """
    Если use_fake=True -> FakeDatabase.
    Иначе -> asyncpg pool (схема создаётся, если её нет).
    """
    if use_fake:
        return FakeDatabase()

    import asyncpg  # чтобы проект запускался без asyncpg, если FakeDB
    pool = await asyncpg.create_pool(dsn=dsn, min_size=1, max_size=10)
    await init_schema(pool)
    return pool
