import asyncio
import logging
from aiogram import Bot, Dispatcher
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from subgate.config import settings
from subgate.db.connection import get_db
from subgate.db.repository import Repository
from subgate.bot.handlers import router as user_router
from subgate.bot.admin_handlers import router as admin_router
from subgate.bot.broadcast_handlers import router as broadcast_router
from subgate.services.access import AccessDecision
from subgate.services.broadcast import Broadcaster
from subgate.services.dispatcher import EventDispatcher, JobTriggered
from subgate.services.monopay_client import MonoPayClient, MonoPayConfig
from subgate.services.payments import PaymentStateMachine
from subgate.services.reconciliation import ReconciliationScheduler, EXPIRED_SWEEP, UNPAID_AUDIT, install_jobs
from subgate.services.subscriptions import SubscriptionLedger
from subgate.services.telegram_gateway import TelegramGroupMembership, TelegramNotifier
from subgate.services.validation import ValidationWorkflow
from subgate.utils.time import now_ts

logger = logging.getLogger("subgate")


async def main():
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    settings.validate()

    bot = Bot(token=settings.bot_token)
    dp = Dispatcher()

    # Подключаем роутеры (админ первым)
    dp.include_router(admin_router)
    dp.include_router(broadcast_router)
    dp.include_router(user_router)

    db = await get_db(use_fake=settings.use_fake_db, dsn=settings.pg_dsn)
    repo = Repository(db=db)

    gateway = MonoPayClient(
        MonoPayConfig(
            token=settings.monopay_token,
            ccy=settings.monopay_ccy,
            redirect_url=settings.monopay_redirect_url,
            timeout_sec=settings.monopay_timeout_sec,
        )
    )
    membership = TelegramGroupMembership(bot)
    notifier = TelegramNotifier(bot)

    ledger = SubscriptionLedger(repo)
    payments = PaymentStateMachine(repo, gateway)
    workflow = ValidationWorkflow(repo, ledger, membership, settings.channel_id)
    access = AccessDecision(
        repo, ledger, workflow, payments, membership, notifier,
        chat_id=settings.channel_id,
        admin_ids=settings.admin_ids,
    )
    reconciliation = ReconciliationScheduler(
        repo, payments, workflow, membership, notifier,
        chat_id=settings.channel_id,
        admin_ids=settings.admin_ids,
        clock=now_ts,
        tz=settings.tz,
    )
    dispatcher = EventDispatcher(access, reconciliation, clock=now_ts)
    broadcaster = Broadcaster(repo, notifier, chat_id=settings.channel_id, tz=settings.tz)

    @dp.update.outer_middleware()
    async def inject(handler, event, data):
        data["repo"] = repo
        data["settings"] = settings
        data["clock"] = now_ts
        data["ledger"] = ledger
        data["payments"] = payments
        data["access"] = access
        data["reconciliation"] = reconciliation
        data["dispatcher"] = dispatcher
        data["broadcaster"] = broadcaster
        return await handler(event, data)

    dispatcher_task = asyncio.create_task(dispatcher.run())

    scheduler = AsyncIOScheduler(timezone=settings.tz)
    install_jobs(
        scheduler,
        dispatcher.trigger_job,
        poll_minutes=settings.payments_poll_minutes,
        audit_minutes=settings.unpaid_audit_minutes,
    )
    scheduler.start()

    # сразу после старта: закрыть истёкшие и выгнать неоплативших
    dispatcher.post(JobTriggered(EXPIRED_SWEEP))
    dispatcher.post(JobTriggered(UNPAID_AUDIT))

    logger.info("bot started: channel=%s fake_db=%s", settings.channel_id, settings.use_fake_db)
    try:
        # chat_member приходит только если явно запросить
        await dp.start_polling(bot, allowed_updates=["message", "callback_query", "chat_member"])
    finally:
        scheduler.shutdown(wait=False)
        try:
            await dispatcher.stop(timeout=30)
        except asyncio.TimeoutError:
            logger.warning("dispatcher did not drain in time, cancelling")
            dispatcher_task.cancel()
        if not settings.use_fake_db:
            await db.close()
        await bot.session.close()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
