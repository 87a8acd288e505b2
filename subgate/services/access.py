from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from subgate.db.models import INVITE_LINK_EXPIRE_SEC
from subgate.db.repository import Repository
from subgate.services import texts
from subgate.services.exceptions import GatewayError
from subgate.services.interfaces import GroupMembership, Notifier
from subgate.services.payments import GatewayOutcome, PaymentStateMachine
from subgate.services.subscriptions import SubscriptionLedger
from subgate.services.validation import ValidationWorkflow

logger = logging.getLogger("subgate.access")


class AccessOutcome(str, Enum):
    GRANTED = "granted"
    CONFIRMED = "confirmed"            # pending-валидация подтверждена прямо сейчас
    AWAITING_JOIN = "awaiting_join"    # оплачено, ждём входа в канал
    PAYMENT_FOUND = "payment_found"    # шлюз только что сообщил об успешной оплате
    DENIED = "denied"


@dataclass(frozen=True)
class AccessCheck:
    outcome: AccessOutcome
    invite_link: Optional[str] = None
    is_admin: bool = False

    @property
    def allowed(self) -> bool:
        return self.outcome is not AccessOutcome.DENIED


class AccessDecision:
    """
    Может ли пользователь находиться в канале.

    Доступ = админ ИЛИ (активная подписка И подтверждённая оплата).
    Здесь же "проверить доступ" из меню и реакция на вход в канал.
    """

    def __init__(
        self,
        repo: Repository,
        ledger: SubscriptionLedger,
        workflow: ValidationWorkflow,
        payments: PaymentStateMachine,
        membership: GroupMembership,
        notifier: Notifier,
        chat_id: str,
        admin_ids: Iterable[int] = (),
        invite_ttl: int = INVITE_LINK_EXPIRE_SEC,
    ):
        self.repo = repo
        self.ledger = ledger
        self.workflow = workflow
        self.payments = payments
        self.membership = membership
        self.notifier = notifier
        self.chat_id = chat_id
        self.admin_ids = frozenset(admin_ids)
        self.invite_ttl = invite_ttl

    def is_admin(self, user_id: int) -> bool:
        return user_id in self.admin_ids

    async def has_access(self, user_id: int, now: int) -> bool:
        if self.is_admin(user_id):
            return True
        if not await self.ledger.is_active(user_id, self.chat_id, now):
            return False
        return await self.workflow.has_validated_access(user_id, now)

    async def invite_link(self, user_id: int, now: int) -> Optional[str]:
        return await self.membership.create_single_use_invite(self.chat_id, user_id, now + self.invite_ttl)

    async def check_access(self, user_id: int, now: int) -> AccessCheck:
        if self.is_admin(user_id):
            return AccessCheck(AccessOutcome.GRANTED, await self.invite_link(user_id, now), is_admin=True)

        if await self.has_access(user_id, now):
            return AccessCheck(AccessOutcome.GRANTED, await self.invite_link(user_id, now))

        pending = await self.repo.get_pending_validation_for_user(user_id, now)
        if pending is not None:
            if await self.workflow.is_member(user_id):
                await self.workflow.on_user_observed_in_group(user_id, now)
                return AccessCheck(AccessOutcome.CONFIRMED)
            return AccessCheck(AccessOutcome.AWAITING_JOIN, await self.invite_link(user_id, now))

        payment = await self.repo.get_last_in_flight_payment(user_id)
        if payment is None:
            return AccessCheck(AccessOutcome.DENIED)

        try:
            outcome = await self.payments.check_gateway(payment, now)
        except GatewayError as e:
            logger.warning("access check: gateway error user_id=%s invoice_id=%s: %s", user_id, payment.invoice_id, e)
            return AccessCheck(AccessOutcome.DENIED)

        if outcome is GatewayOutcome.WON:
            await self.workflow.on_payment_success(payment, now)
        if outcome in (GatewayOutcome.WON, GatewayOutcome.LOST):
            return AccessCheck(AccessOutcome.PAYMENT_FOUND, await self.invite_link(user_id, now))
        return AccessCheck(AccessOutcome.DENIED)

    async def on_member_joined(self, user_id: int, now: int) -> bool:
        """True, если пользователь удалён из канала."""
        if self.is_admin(user_id):
            return False

        await self.repo.record_channel_join(user_id, self.chat_id, now)
        await self.workflow.on_user_observed_in_group(user_id, now)

        if await self.has_access(user_id, now):
            return False

        logger.info("join without access: user_id=%s, removing", user_id)
        await self.membership.remove_member(self.chat_id, user_id)
        try:
            await self.notifier.notify(user_id, texts.ACCESS_CLOSED, plans_keyboard=True)
        except Exception as e:
            # пользователь мог не запускать бота
            logger.warning("access closed notice not delivered user_id=%s: %r", user_id, e)
        return True
