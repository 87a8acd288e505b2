from __future__ import annotations

import logging

from subgate.db.models import PLANS, ONE_DAY_SEC, Plan, Subscription
from subgate.db.repository import Repository
from subgate.services.exceptions import UnknownPlanError

logger = logging.getLogger("subgate.subscriptions")


def get_plan(plan_code: str) -> Plan:
    try:
        return PLANS[plan_code]
    except KeyError:
        raise UnknownPlanError(f"unknown plan code: {plan_code!r}") from None


class SubscriptionLedger:
    """
    Окно доступа [start_at, end_at) для пары (пользователь, канал).
    Продление не укорачивает окно: новый срок добавляется к max(end_at, now).
    Длительность плана: фиксированные "месяцы" по 30 дней, без календаря.
    """

    def __init__(self, repo: Repository):
        self.repo = repo

    async def extend(self, user_id: int, chat_id: str, plan_code: str, now: int) -> Subscription:
        plan = get_plan(plan_code)
        sub = await self.repo.extend_subscription(user_id, chat_id, plan.code, now, plan.duration_sec)
        logger.info(
            "extend: user_id=%s chat_id=%s plan=%s sub_id=%s end_at=%s",
            user_id, chat_id, plan.code, sub.id, sub.end_at,
        )
        return sub

    async def is_active(self, user_id: int, chat_id: str, now: int) -> bool:
        return await self.repo.has_active_subscription(user_id, chat_id, now)

    async def current(self, user_id: int, chat_id: str) -> Subscription | None:
        return await self.repo.get_active_subscription(user_id, chat_id)

    async def grant_days(self, user_id: int, chat_id: str, days: int, now: int) -> Subscription:
        """Ручная выдача админом: прежние подписки пары выключаются."""
        if days <= 0:
            raise ValueError("days must be positive")
        sub = await self.repo.replace_subscription(
            user_id, chat_id, "TEST", start_at=now, end_at=now + days * ONE_DAY_SEC,
        )
        logger.info("grant: user_id=%s days=%s sub_id=%s end_at=%s", user_id, days, sub.id, sub.end_at)
        return sub

    async def revoke(self, user_id: int, chat_id: str) -> bool:
        revoked = await self.repo.revoke_user_subscription(user_id, chat_id)
        logger.info("revoke: user_id=%s chat_id=%s revoked=%s", user_id, chat_id, revoked)
        return revoked
