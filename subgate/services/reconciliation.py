from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from subgate.db.models import (
    EXPIRY_NOTICE_KEY,
    EXPIRY_NOTICE_RETRY_SEC,
    ONE_DAY_SEC,
    PAYMENT_RECOVERY_GRACE_SEC,
    PAYMENT_RECOVERY_WINDOW_SEC,
    Payment,
    Subscription,
)
from subgate.db.repository import Repository
from subgate.services import texts
from subgate.services.interfaces import GROUP_ADMIN_STATUSES, OUT_OF_GROUP_STATUSES, GroupMembership, Notifier
from subgate.services.payments import GatewayOutcome, PaymentStateMachine
from subgate.services.validation import ValidationWorkflow
from subgate.utils.time import Clock, format_date_ru, now_ts

logger = logging.getLogger("subgate.scheduler")

EXPIRED_SWEEP = "expired_sweep"
UNPAID_AUDIT = "unpaid_audit"
PAYMENTS_POLL = "payments_poll"
EXPIRY_REMINDER_3D = "expiry_reminder_3d"
EXPIRY_REMINDER_1D = "expiry_reminder_1d"
UNSUBSCRIBED_REMINDER = "unsubscribed_reminder"

HALF_DAY_SEC = ONE_DAY_SEC // 2


@dataclass
class JobReport:
    job: str
    processed: int = 0
    skipped: bool = False
    errors: List[str] = field(default_factory=list)

    def summary(self) -> str:
        if self.skipped:
            return f"{self.job}: уже выполняется, пропущено"
        line = f"{self.job}: обработано {self.processed}, ошибок {len(self.errors)}"
        if self.errors:
            line += "\n" + "\n".join(f"• {e}" for e in self.errors[:20])
        return line


class ReconciliationScheduler:
    """
    Фоновые задачи, которые приводят канал в соответствие с подписками.

    Каждая задача защищена флагом "уже выполняется": повторный запуск,
    пока идёт предыдущий, возвращает skipped-отчёт. Ошибка на одном
    пользователе не прерывает пачку.
    """

    def __init__(
        self,
        repo: Repository,
        payments: PaymentStateMachine,
        workflow: ValidationWorkflow,
        membership: GroupMembership,
        notifier: Notifier,
        chat_id: str,
        admin_ids: Iterable[int] = (),
        clock: Clock = now_ts,
        tz: str = "Europe/Kyiv",
        send_delay: float = 0.1,
    ):
        self.repo = repo
        self.payments = payments
        self.workflow = workflow
        self.membership = membership
        self.notifier = notifier
        self.chat_id = chat_id
        self.admin_ids = frozenset(admin_ids)
        self.clock = clock
        self.tz = tz
        self.send_delay = send_delay

        self._running: set[str] = set()
        self._jobs: Dict[str, Callable[[int], Awaitable[JobReport]]] = {
            EXPIRED_SWEEP: self.sweep_expired,
            UNPAID_AUDIT: self.audit_unpaid_members,
            PAYMENTS_POLL: self.poll_payments,
            EXPIRY_REMINDER_3D: lambda now: self.send_expiry_reminders(3, now),
            EXPIRY_REMINDER_1D: lambda now: self.send_expiry_reminders(1, now),
            UNSUBSCRIBED_REMINDER: self.remind_unsubscribed,
        }

    @property
    def job_names(self) -> List[str]:
        return list(self._jobs)

    def is_running(self, name: str) -> bool:
        return name in self._running

    async def run_job(self, name: str, now: Optional[int] = None) -> JobReport:
        try:
            job = self._jobs[name]
        except KeyError:
            raise ValueError(f"unknown job {name!r}") from None

        if name in self._running:
            logger.info("job %s is still running, skip", name)
            return JobReport(name, skipped=True)

        self._running.add(name)
        try:
            report = await job(self.clock() if now is None else now)
        finally:
            self._running.discard(name)

        logger.info(
            "job %s done: processed=%s errors=%s", name, report.processed, len(report.errors)
        )
        return report

    async def _pause(self) -> None:
        # анти-флуд между сообщениями
        if self.send_delay:
            await asyncio.sleep(self.send_delay)

    # --- истёкшие подписки ---

    async def expired_overview(self, now: int) -> List[Subscription]:
        return await self.repo.find_expired_active_subscriptions(now)

    async def sweep_expired(self, now: int) -> JobReport:
        report = JobReport(EXPIRED_SWEEP)
        expired = await self.repo.find_expired_active_subscriptions(now)
        if expired:
            logger.info("expired sweep: %s subscriptions to close", len(expired))

        for sub in expired:
            uid = sub.telegram_user_id
            try:
                await self.membership.remove_member(sub.chat_id, uid)
            except Exception as e:
                # подписку не трогаем, попробуем в следующий раз
                logger.warning("expired sweep: removal failed sub_id=%s user_id=%s: %r", sub.id, uid, e)
                report.errors.append(f"user {uid}: не удалось удалить из канала ({e})")
                continue

            if not await self.repo.close_expired_subscription(sub.id, now):
                # продлили, пока шло удаление: подписка остаётся, вход по ссылке из "Проверить доступ"
                logger.info("expired sweep: sub_id=%s user_id=%s renewed during sweep, kept", sub.id, uid)
                continue
            report.processed += 1

        await self._send_expiry_notices(report, now)
        return report

    async def _send_expiry_notices(self, report: JobReport, now: int) -> None:
        # недоставленные в прошлые проходы тоже здесь
        closed = await self.repo.find_closed_subscriptions_without_notice(
            now - EXPIRY_NOTICE_RETRY_SEC, EXPIRY_NOTICE_KEY
        )
        for sub in closed:
            uid = sub.telegram_user_id
            if await self.repo.has_active_subscription(uid, sub.chat_id, now):
                # уже продлил: уведомление неактуально
                await self.repo.mark_expiry_reminder_sent(sub.id, EXPIRY_NOTICE_KEY, now)
                continue
            try:
                await self.notifier.notify(uid, texts.SUBSCRIPTION_EXPIRED, plans_keyboard=True)
            except Exception as e:
                logger.warning("expired sweep: notice not delivered user_id=%s: %r", uid, e)
                report.errors.append(f"user {uid}: уведомление не доставлено ({e})")
                continue
            await self.repo.mark_expiry_reminder_sent(sub.id, EXPIRY_NOTICE_KEY, now)
            await self._pause()

    # --- неоплатившие участники ---

    async def audit_unpaid_members(self, now: int) -> JobReport:
        report = JobReport(UNPAID_AUDIT)
        user_ids = await self.repo.list_user_ids_without_successful_payment()

        for uid in user_ids:
            if uid in self.admin_ids:
                continue
            try:
                status = await self.membership.get_membership_status(self.chat_id, uid)
            except Exception as e:
                logger.warning("unpaid audit: membership lookup failed user_id=%s: %r", uid, e)
                report.errors.append(f"user {uid}: статус не получен ({e})")
                continue

            if status in OUT_OF_GROUP_STATUSES or status in GROUP_ADMIN_STATUSES:
                continue

            try:
                await self.membership.remove_member(self.chat_id, uid)
            except Exception as e:
                logger.warning("unpaid audit: removal failed user_id=%s: %r", uid, e)
                report.errors.append(f"user {uid}: не удалось удалить ({e})")
                continue
            logger.info("unpaid audit: removed user_id=%s (status=%s)", uid, status)
            report.processed += 1

        return report

    # --- опрос платежей ---

    async def poll_payments(self, now: int) -> JobReport:
        report = JobReport(PAYMENTS_POLL)
        in_flight = await self.repo.list_in_flight_payments()

        for payment in in_flight:
            try:
                outcome = await self.payments.check_gateway(payment, now)
            except Exception as e:
                logger.warning("payments poll: status failed invoice_id=%s: %r", payment.invoice_id, e)
                report.errors.append(f"invoice {payment.invoice_id}: {e}")
                continue

            if outcome is not GatewayOutcome.WON:
                continue

            report.processed += 1
            await self._grant_paid(payment, report, now)

        # success без валидации: прошлый проход выиграл CAS, но упал до создания доступа
        orphans = await self.repo.list_paid_payments_without_validation(
            now - PAYMENT_RECOVERY_WINDOW_SEC, now - PAYMENT_RECOVERY_GRACE_SEC
        )
        for payment in orphans:
            logger.warning("payments poll: recovering paid invoice_id=%s without validation", payment.invoice_id)
            if await self._grant_paid(payment, report, now):
                report.processed += 1

        return report

    async def _grant_paid(self, payment: Payment, report: JobReport, now: int) -> bool:
        try:
            await self.workflow.on_payment_success(payment, now)
        except Exception as e:
            # оплата останется success без валидации и подхватится следующим проходом
            logger.exception("payments poll: validation failed invoice_id=%s", payment.invoice_id)
            report.errors.append(f"invoice {payment.invoice_id}: валидация не создана ({e})")
            return False

        try:
            await self.notifier.notify(payment.telegram_user_id, texts.PAYMENT_RECEIVED)
        except Exception as e:
            logger.warning("payments poll: notice not delivered user_id=%s: %r", payment.telegram_user_id, e)
        return True

    # --- напоминания ---

    def _reminder_window(self, days: int, now: int) -> tuple[int, int]:
        if days == 1:
            return now, now + ONE_DAY_SEC
        center = now + days * ONE_DAY_SEC
        return center - HALF_DAY_SEC, center + HALF_DAY_SEC

    async def send_expiry_reminders(self, days: int, now: int) -> JobReport:
        job = EXPIRY_REMINDER_1D if days == 1 else EXPIRY_REMINDER_3D
        report = JobReport(job)
        start, end = self._reminder_window(days, now)
        subs = await self.repo.find_active_subscriptions_ending_between(start, end)

        for sub in subs:
            if await self.repo.was_expiry_reminder_sent(sub.id, days):
                continue
            text = texts.expiry_reminder(days, format_date_ru(sub.end_at, self.tz))
            try:
                await self.notifier.notify(sub.telegram_user_id, text, plans_keyboard=True)
            except Exception as e:
                logger.warning("reminder %sd not delivered user_id=%s: %r", days, sub.telegram_user_id, e)
                report.errors.append(f"user {sub.telegram_user_id}: {e}")
                continue
            await self.repo.mark_expiry_reminder_sent(sub.id, days, now)
            report.processed += 1
            await self._pause()

        return report

    async def remind_unsubscribed(self, now: int) -> JobReport:
        report = JobReport(UNSUBSCRIBED_REMINDER)
        user_ids = await self.repo.list_known_user_ids()

        for uid in user_ids:
            if uid in self.admin_ids:
                continue
            if await self.repo.has_active_subscription(uid, self.chat_id, now):
                continue
            info = await self.repo.get_reminder_info(uid)
            if info.last_sent_at is not None and now - info.last_sent_at < ONE_DAY_SEC:
                continue
            try:
                await self.notifier.notify(uid, texts.NO_SUBSCRIPTION, plans_keyboard=True)
            except Exception as e:
                # чаще всего бот заблокирован пользователем
                logger.warning("unsubscribed reminder not delivered user_id=%s: %r", uid, e)
                report.errors.append(f"user {uid}: {e}")
                continue
            await self.repo.set_reminder_sent(uid, now)
            report.processed += 1
            await self._pause()

        return report


def install_jobs(
    aps,
    trigger: Callable[[str], Awaitable[None]],
    poll_minutes: int = 2,
    audit_minutes: int = 60,
) -> None:
    """
    Расписание (время по часовому поясу планировщика).
    APScheduler только ставит событие в очередь, работу делает диспетчер.
    """
    schedule = {
        EXPIRED_SWEEP: CronTrigger(hour="10,22", minute=15),
        UNPAID_AUDIT: IntervalTrigger(minutes=audit_minutes),
        PAYMENTS_POLL: IntervalTrigger(minutes=poll_minutes),
        EXPIRY_REMINDER_3D: CronTrigger(hour=11, minute=0),
        EXPIRY_REMINDER_1D: CronTrigger(hour=18, minute=0),
        UNSUBSCRIBED_REMINDER: CronTrigger(hour=10, minute=0),
    }
    for name, when in schedule.items():
        aps.add_job(
            trigger,
            when,
            args=[name],
            id=name,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
