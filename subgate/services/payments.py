from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from subgate.db.models import Payment, PaymentStatus
from subgate.db.repository import Repository
from subgate.services.exceptions import UnknownPlanError
from subgate.services.interfaces import PaymentGateway
from subgate.services.subscriptions import get_plan

logger = logging.getLogger("subgate.payments")


class GatewayOutcome(str, Enum):
    WON = "won"              # этот вызов перевёл платеж в success
    LOST = "lost"            # success, но записал кто-то другой
    FAILED = "failed"        # шлюз сообщил failure/expired/reversed
    PENDING = "pending"      # ещё в процессе


@dataclass(frozen=True)
class PurchaseLink:
    invoice_id: str
    pay_url: str
    plan_code: str
    amount_minor: int


class PaymentStateMachine:
    """
    Жизненный цикл платежа. Переход в success только через try_mark_success:
    его могут вызвать одновременно опросчик и ручная проверка пользователя,
    True получит ровно один.
    """

    def __init__(self, repo: Repository, gateway: PaymentGateway):
        self.repo = repo
        self.gateway = gateway

    async def try_mark_success(self, invoice_id: str, paid_at: int) -> bool:
        won = await self.repo.try_mark_payment_success(invoice_id, paid_at)
        if won:
            logger.info("payment success recorded: invoice_id=%s paid_at=%s", invoice_id, paid_at)
        else:
            logger.debug("payment already handled: invoice_id=%s", invoice_id)
        return won

    async def mark_terminal(self, invoice_id: str, status: PaymentStatus) -> bool:
        if not status.is_failure:
            raise ValueError(f"{status.value} is not a terminal failure status")
        changed = await self.repo.mark_payment_failed(invoice_id, status)
        if changed:
            logger.info("payment closed: invoice_id=%s status=%s", invoice_id, status.value)
        return changed

    async def start_purchase(self, user_id: int, plan_code: str, now: int) -> PurchaseLink:
        plan = get_plan(plan_code)
        if plan.amount_minor <= 0:
            raise UnknownPlanError(f"plan {plan_code!r} is not for sale")

        reference = f"tg_{user_id}_{plan.code}_{now}"
        invoice = await self.gateway.create_invoice(plan.amount_minor, reference, plan.title)
        await self.repo.insert_payment(
            Payment(
                invoice_id=invoice.invoice_id,
                telegram_user_id=user_id,
                plan_code=plan.code,
                amount=plan.amount_minor,
                status=PaymentStatus.CREATED,
                created_at=now,
            )
        )
        logger.info("invoice created: user_id=%s plan=%s invoice_id=%s", user_id, plan.code, invoice.invoice_id)
        return PurchaseLink(invoice.invoice_id, invoice.pay_url, plan.code, plan.amount_minor)

    async def record_manual_grant(self, user_id: int, now: int) -> bool:
        """
        "Подарочная" успешная оплата (amount=0), чтобы выданный вручную
        доступ не выглядел как неоплаченный. Только если success-оплат ещё нет.
        """
        if await self.repo.has_successful_payment(user_id):
            return False
        await self.repo.insert_payment(
            Payment(
                invoice_id=f"manual_grant_{user_id}_{now}",
                telegram_user_id=user_id,
                plan_code="TEST",
                amount=0,
                status=PaymentStatus.SUCCESS,
                created_at=now,
                paid_at=now,
            )
        )
        return True

    async def check_gateway(self, payment: Payment, now: int) -> GatewayOutcome:
        """
        Спрашивает шлюз о статусе и применяет его к платежу.
        Ошибки шлюза не глотаются, решает вызывающий.
        """
        raw = await self.gateway.get_invoice_status(payment.invoice_id)
        try:
            status = PaymentStatus(raw)
        except ValueError:
            logger.warning("unknown gateway status %r for invoice_id=%s", raw, payment.invoice_id)
            return GatewayOutcome.PENDING

        if status is PaymentStatus.SUCCESS:
            won = await self.try_mark_success(payment.invoice_id, now)
            return GatewayOutcome.WON if won else GatewayOutcome.LOST
        if status.is_failure:
            await self.mark_terminal(payment.invoice_id, status)
            return GatewayOutcome.FAILED
        return GatewayOutcome.PENDING
