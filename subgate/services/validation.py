from __future__ import annotations

import logging

from subgate.db.models import (
    Payment,
    PaymentValidation,
    ValidationStatus,
    PAYMENT_VALIDATION_TIMEOUT_SEC,
)
from subgate.db.repository import Repository
from subgate.services.subscriptions import SubscriptionLedger
from subgate.services.interfaces import GroupMembership, OUT_OF_GROUP_STATUSES

logger = logging.getLogger("subgate.validation")


class ValidationWorkflow:
    """
    Подтверждение оплаты присутствием в канале.

    Успешная оплата превращается в доступ сразу, если пользователь уже в канале.
    Иначе создаётся pending-валидация, и у пользователя есть окно
    (10 минут), чтобы зайти. Просроченные pending не трогаем, они просто
    перестают что-либо давать.
    """

    def __init__(
        self,
        repo: Repository,
        ledger: SubscriptionLedger,
        membership: GroupMembership,
        chat_id: str,
        window_sec: int = PAYMENT_VALIDATION_TIMEOUT_SEC,
    ):
        self.repo = repo
        self.ledger = ledger
        self.membership = membership
        self.chat_id = chat_id
        self.window_sec = window_sec

    async def is_member(self, user_id: int) -> bool:
        # ошибка запроса = "не в канале": доступ не выдаём на неясном состоянии
        try:
            status = await self.membership.get_membership_status(self.chat_id, user_id)
        except Exception as e:
            logger.warning("membership lookup failed user_id=%s: %r", user_id, e)
            return False
        return status not in OUT_OF_GROUP_STATUSES

    async def on_payment_success(self, payment: Payment, now: int) -> PaymentValidation:
        in_group = await self.is_member(payment.telegram_user_id)

        if in_group:
            validation = PaymentValidation(
                invoice_id=payment.invoice_id,
                telegram_user_id=payment.telegram_user_id,
                plan_code=payment.plan_code,
                paid_at=now,
                deadline_at=now,
                status=ValidationStatus.CONFIRMED,
                confirmed_at=now,
                join_at=now,
            )
        else:
            validation = PaymentValidation(
                invoice_id=payment.invoice_id,
                telegram_user_id=payment.telegram_user_id,
                plan_code=payment.plan_code,
                paid_at=now,
                deadline_at=now + self.window_sec,
                status=ValidationStatus.PENDING,
            )

        created = await self.repo.create_validation(validation)
        if not created:
            # валидация по этому счёту уже есть, доступ по нему уже обработан
            logger.info("validation already exists: invoice_id=%s", payment.invoice_id)
            existing = await self.repo.get_validation(payment.invoice_id)
            return existing or validation

        logger.info(
            "validation created: invoice_id=%s user_id=%s status=%s deadline_at=%s",
            validation.invoice_id, validation.telegram_user_id, validation.status.value, validation.deadline_at,
        )
        if validation.status is ValidationStatus.CONFIRMED:
            await self.ledger.extend(payment.telegram_user_id, self.chat_id, payment.plan_code, now)
        return validation

    async def on_user_observed_in_group(self, user_id: int, now: int) -> bool:
        """
        Пользователь замечен в канале. Если есть живая pending-валидация,
        подтверждаем её и продлеваем подписку от текущего момента.
        True, если продление сделал именно этот вызов.
        """
        pending = await self.repo.get_pending_validation_for_user(user_id, now)
        if pending is None:
            return False

        confirmed = await self.repo.confirm_validation(pending.invoice_id, join_at=now, confirmed_at=now)
        if not confirmed:
            return False

        logger.info("validation confirmed: invoice_id=%s user_id=%s", pending.invoice_id, user_id)
        await self.ledger.extend(user_id, self.chat_id, pending.plan_code, now)
        return True

    async def has_validated_access(self, user_id: int, now: int) -> bool:
        if await self.repo.has_confirmed_validation(user_id):
            return True

        if await self.repo.get_pending_validation_for_user(user_id, now) is not None:
            return True

        if await self.repo.has_any_validation(user_id):
            return False
        # пользователи до появления валидаций и ручные выдачи
        return await self.repo.has_successful_payment(user_id)
