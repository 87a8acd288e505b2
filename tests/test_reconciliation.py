import asyncio
from unittest.mock import MagicMock

import pytest

from conftest import ADMIN_ID, CHAT
from subgate.db.models import EXPIRY_NOTICE_KEY, ONE_DAY_SEC, PaymentStatus, ValidationStatus
from subgate.services import texts
from subgate.services.reconciliation import (
    EXPIRED_SWEEP,
    PAYMENTS_POLL,
    UNPAID_AUDIT,
    JobReport,
    install_jobs,
)

D = 30 * ONE_DAY_SEC


async def _subscription_ending_at(env, user_id: int, end_at: int):
    return await env.ledger.grant_days(user_id, CHAT, 1, end_at - ONE_DAY_SEC)


def test_expired_sweep_retries_failed_removal_and_notifies_once(env):
    async def scenario():
        sub = await _subscription_ending_at(env, 5, 5000)
        env.membership.fail_remove.add(5)
        first = await env.reconciliation.sweep_expired(6000)
        still_active = await env.repo.get_active_subscription(5, CHAT)

        env.membership.fail_remove.clear()
        second = await env.reconciliation.sweep_expired(7000)
        after = await env.repo.get_active_subscription(5, CHAT)
        return sub, first, still_active, second, after

    sub, first, still_active, second, after = asyncio.run(scenario())

    assert first.processed == 0 and len(first.errors) == 1
    assert still_active is not None and still_active.id == sub.id
    assert second.processed == 1 and second.errors == []
    assert after is None
    assert env.membership.removed == [5]
    assert env.notifier.texts_for(5) == [texts.SUBSCRIPTION_EXPIRED]
    assert (sub.id, EXPIRY_NOTICE_KEY) in env.db.expiry_reminders


def test_second_sweep_without_new_expirations_does_nothing(env):
    async def scenario():
        await _subscription_ending_at(env, 5, 5000)
        await env.reconciliation.sweep_expired(6000)
        removed, sent = list(env.membership.removed), list(env.notifier.sent)
        report = await env.reconciliation.sweep_expired(6500)
        return removed, sent, report

    removed, sent, report = asyncio.run(scenario())

    assert report.processed == 0
    assert env.membership.removed == removed
    assert env.notifier.sent == sent


def test_sweep_keeps_unexpired_subscriptions(env):
    async def scenario():
        await _subscription_ending_at(env, 5, 5000)
        report = await env.reconciliation.sweep_expired(4999)
        return report, await env.repo.get_active_subscription(5, CHAT)

    report, sub = asyncio.run(scenario())

    assert report.processed == 0
    assert sub is not None
    assert env.membership.removed == []


def test_sweep_keeps_subscription_renewed_during_removal(env):
    async def scenario():
        sub = await _subscription_ending_at(env, 5, 5000)
        remove = env.membership.remove_member

        async def renew_then_remove(chat_id, user_id):
            # оплата продления приходит, пока идёт кик
            await env.ledger.extend(user_id, CHAT, "P1M", 6000)
            await remove(chat_id, user_id)

        env.membership.remove_member = renew_then_remove
        report = await env.reconciliation.sweep_expired(6000)
        return sub, report, await env.repo.get_active_subscription(5, CHAT)

    sub, report, after = asyncio.run(scenario())

    assert report.processed == 0
    assert after is not None and after.id == sub.id
    assert after.end_at == 6000 + D
    assert env.notifier.texts_for(5) == []


def test_failed_expiry_notice_is_retried_on_next_sweep(env):
    async def scenario():
        sub = await _subscription_ending_at(env, 5, 5000)
        env.notifier.fail_for.add(5)
        first = await env.reconciliation.sweep_expired(6000)
        flagged_after_failure = (sub.id, EXPIRY_NOTICE_KEY) in env.db.expiry_reminders

        env.notifier.fail_for.clear()
        second = await env.reconciliation.sweep_expired(7000)
        third = await env.reconciliation.sweep_expired(8000)
        return sub, first, flagged_after_failure, second, third

    sub, first, flagged_after_failure, second, third = asyncio.run(scenario())

    assert first.processed == 1 and len(first.errors) == 1
    assert not flagged_after_failure
    assert second.processed == 0 and second.errors == []
    assert third.errors == []
    assert env.notifier.texts_for(5) == [texts.SUBSCRIPTION_EXPIRED]
    assert (sub.id, EXPIRY_NOTICE_KEY) in env.db.expiry_reminders
    assert env.membership.removed == [5]


def test_expiry_notice_dropped_after_renewal(env):
    async def scenario():
        await _subscription_ending_at(env, 5, 5000)
        env.notifier.fail_for.add(5)
        await env.reconciliation.sweep_expired(6000)
        env.notifier.fail_for.clear()
        await env.ledger.extend(5, CHAT, "P1M", 6500)
        return await env.reconciliation.sweep_expired(7000)

    report = asyncio.run(scenario())

    assert report.errors == []
    assert env.notifier.texts_for(5) == []


def test_revoked_subscription_gets_no_expiry_notice(env):
    async def scenario():
        await _subscription_ending_at(env, 6, 5000)
        await env.ledger.revoke(6, CHAT)
        return await env.reconciliation.sweep_expired(6000)

    report = asyncio.run(scenario())

    assert report.processed == 0
    assert env.notifier.sent == []


def test_sweep_removes_from_subscription_chat(env):
    other_chat = "-100777"

    async def scenario():
        await env.ledger.grant_days(8, other_chat, 1, 5000 - ONE_DAY_SEC)
        return await env.reconciliation.sweep_expired(6000)

    report = asyncio.run(scenario())

    assert report.processed == 1
    assert env.membership.removed_from == [(other_chat, 8)]


def test_expired_overview_is_read_only(env):
    async def scenario():
        await _subscription_ending_at(env, 5, 5000)
        await _subscription_ending_at(env, 6, 9000)
        return await env.reconciliation.expired_overview(6000)

    expired = asyncio.run(scenario())

    assert [s.telegram_user_id for s in expired] == [5]
    assert env.membership.removed == []
    assert env.db.subscriptions[expired[0].id].active


def test_unpaid_audit_removes_only_unpaid_regular_members(env):
    env.membership.statuses.update({
        10: "member",           # без оплаты, удалить
        11: "member",           # оплатил
        12: "left",             # не в канале
        13: "administrator",    # админ канала
        ADMIN_ID: "member",     # админ бота
    })
    env.membership.fail_lookup.add(14)

    async def scenario():
        for uid in (10, 12, 13, 14, ADMIN_ID):
            await env.repo.save_user_info(uid, 100, username=f"user{uid}")
        await env.add_payment("paid-11", 11, status=PaymentStatus.SUCCESS)
        return await env.reconciliation.audit_unpaid_members(1000)

    report = asyncio.run(scenario())

    assert env.membership.removed == [10]
    assert report.processed == 1
    assert len(report.errors) == 1


def test_poll_payments_applies_success_once(env):
    env.membership.statuses[5] = "member"

    async def scenario():
        await env.add_payment("inv-1", 5, created_at=900)
        await env.add_payment("inv-2", 6, created_at=950)
        env.gateway.statuses.update({"inv-1": "success", "inv-2": "expired"})
        first = await env.reconciliation.poll_payments(1000)
        second = await env.reconciliation.poll_payments(1200)
        return first, second

    first, second = asyncio.run(scenario())

    assert first.processed == 1
    assert second.processed == 0
    assert env.db.payments["inv-2"].status is PaymentStatus.EXPIRED
    assert env.db.validations["inv-1"].status is ValidationStatus.CONFIRMED
    assert env.db.subscriptions[1].end_at == 1000 + D
    assert env.notifier.texts_for(5) == [texts.PAYMENT_RECEIVED]
    assert env.gateway.status_calls == ["inv-1", "inv-2"]


def test_poll_gateway_errors_do_not_abort_batch(env):
    async def scenario():
        await env.add_payment("inv-1", 5, created_at=900)
        await env.add_payment("inv-2", 6, created_at=950)

        calls = []
        original = env.gateway.get_invoice_status

        async def flaky(invoice_id):
            calls.append(invoice_id)
            if invoice_id == "inv-1":
                raise RuntimeError("connection reset")
            return await original(invoice_id)

        env.gateway.get_invoice_status = flaky
        env.gateway.statuses["inv-2"] = "success"
        return await env.reconciliation.poll_payments(1000), calls

    report, calls = asyncio.run(scenario())

    assert calls == ["inv-1", "inv-2"]
    assert report.processed == 1
    assert len(report.errors) == 1
    assert env.db.payments["inv-1"].status is PaymentStatus.CREATED


def test_poll_recovers_success_left_without_validation(env):
    env.membership.statuses[5] = "member"

    async def scenario():
        await env.add_payment("inv-1", 5, created_at=900)
        env.gateway.statuses["inv-1"] = "success"

        create_validation = env.repo.create_validation
        calls = []

        async def flaky_create(v):
            calls.append(v.invoice_id)
            if len(calls) == 1:
                raise ConnectionError("connection to server was lost")
            return await create_validation(v)

        env.repo.create_validation = flaky_create
        failed = await env.reconciliation.poll_payments(1000)
        too_early = await env.reconciliation.poll_payments(1030)
        recovered = await env.reconciliation.poll_payments(1120)
        again = await env.reconciliation.poll_payments(1240)
        has_access = await env.access.has_access(5, 1240)
        return failed, too_early, recovered, again, has_access

    failed, too_early, recovered, again, has_access = asyncio.run(scenario())

    assert failed.processed == 1 and len(failed.errors) == 1
    assert too_early.processed == 0
    assert recovered.processed == 1 and recovered.errors == []
    assert again.processed == 0
    assert env.db.payments["inv-1"].status is PaymentStatus.SUCCESS
    assert env.db.validations["inv-1"].status is ValidationStatus.CONFIRMED
    assert env.db.subscriptions[1].end_at == 1120 + D
    assert has_access
    assert env.notifier.texts_for(5) == [texts.PAYMENT_RECEIVED]


def test_poll_leaves_old_payments_without_validation_alone(env):
    async def scenario():
        await env.add_payment("old-1", 7, status=PaymentStatus.SUCCESS, created_at=100)
        return await env.reconciliation.poll_payments(10 * ONE_DAY_SEC)

    report = asyncio.run(scenario())

    assert report.processed == 0
    assert env.db.validations == {}
    assert env.db.subscriptions == {}


def test_poller_and_access_check_race_extends_once(env):
    env.membership.statuses[5] = "member"

    async def scenario():
        await env.add_payment("inv-1", 5, created_at=900)
        env.gateway.statuses["inv-1"] = "success"
        await asyncio.gather(
            env.reconciliation.poll_payments(1000),
            env.access.check_access(5, 1000),
        )

    asyncio.run(scenario())

    subs = list(env.db.subscriptions.values())
    assert len(subs) == 1
    assert subs[0].end_at == 1000 + D
    assert len(env.db.validations) == 1


def test_expiry_reminders_sent_once_per_horizon(env):
    now = 100 * ONE_DAY_SEC

    async def scenario():
        three = await _subscription_ending_at(env, 5, now + 3 * ONE_DAY_SEC + 3600)
        one = await _subscription_ending_at(env, 6, now + 20 * 3600)
        reports = []
        for _ in range(3):
            reports.append(await env.reconciliation.send_expiry_reminders(3, now))
            reports.append(await env.reconciliation.send_expiry_reminders(1, now))
        return three, one, reports

    three, one, reports = asyncio.run(scenario())

    assert [r.processed for r in reports] == [1, 1, 0, 0, 0, 0]
    assert len(env.notifier.texts_for(5)) == 1
    assert len(env.notifier.texts_for(6)) == 1
    assert "Через 3 дня" in env.notifier.texts_for(5)[0]
    assert "завтра" in env.notifier.texts_for(6)[0]
    assert (three.id, 3) in env.db.expiry_reminders
    assert (one.id, 1) in env.db.expiry_reminders


def test_expiry_reminder_retried_after_failed_delivery(env):
    now = 100 * ONE_DAY_SEC

    async def scenario():
        sub = await _subscription_ending_at(env, 5, now + 3 * ONE_DAY_SEC)
        env.notifier.fail_for.add(5)
        failed = await env.reconciliation.send_expiry_reminders(3, now)
        env.notifier.fail_for.clear()
        retried = await env.reconciliation.send_expiry_reminders(3, now + 60)
        return sub, failed, retried

    sub, failed, retried = asyncio.run(scenario())

    assert failed.processed == 0 and len(failed.errors) == 1
    assert retried.processed == 1
    assert (sub.id, 3) in env.db.expiry_reminders


def test_three_day_window_excludes_far_subscriptions(env):
    now = 100 * ONE_DAY_SEC

    async def scenario():
        await _subscription_ending_at(env, 5, now + 4 * ONE_DAY_SEC)
        await _subscription_ending_at(env, 6, now + 2 * ONE_DAY_SEC)
        return await env.reconciliation.send_expiry_reminders(3, now)

    assert asyncio.run(scenario()).processed == 0
    assert env.notifier.sent == []


def test_unsubscribed_reminder_at_most_daily(env):
    async def scenario():
        await env.add_payment("inv-1", 5)                                   # без подписки
        await env.add_payment("inv-2", 6, status=PaymentStatus.SUCCESS)
        await env.ledger.extend(6, CHAT, "P1M", 0)                          # активная подписка
        first = await env.reconciliation.remind_unsubscribed(1000)
        same_day = await env.reconciliation.remind_unsubscribed(1000 + ONE_DAY_SEC - 1)
        next_day = await env.reconciliation.remind_unsubscribed(1000 + ONE_DAY_SEC)
        return first, same_day, next_day, await env.repo.get_reminder_info(5)

    first, same_day, next_day, info = asyncio.run(scenario())

    assert (first.processed, same_day.processed, next_day.processed) == (1, 0, 1)
    assert env.notifier.texts_for(5) == [texts.NO_SUBSCRIPTION, texts.NO_SUBSCRIPTION]
    assert env.notifier.texts_for(6) == []
    assert (info.last_sent_at, info.send_count) == (1000 + ONE_DAY_SEC, 2)


def test_overlapping_job_run_is_skipped(env):
    async def scenario():
        await env.add_payment("inv-1", 5, created_at=900)
        env.gateway.release = asyncio.Event()

        first = asyncio.create_task(env.reconciliation.run_job(PAYMENTS_POLL, 1000))
        while not env.gateway.status_calls:
            await asyncio.sleep(0)

        running = env.reconciliation.is_running(PAYMENTS_POLL)
        overlapped = await env.reconciliation.run_job(PAYMENTS_POLL, 1001)
        other = await env.reconciliation.run_job(EXPIRED_SWEEP, 1001)

        env.gateway.release.set()
        return running, overlapped, other, await first

    running, overlapped, other, first = asyncio.run(scenario())

    assert running is True
    assert overlapped.skipped is True
    assert other.skipped is False
    assert first.skipped is False
    assert env.gateway.status_calls == ["inv-1"]
    assert not env.reconciliation.is_running(PAYMENTS_POLL)


def test_run_job_uses_clock_and_releases_guard_on_error(env):
    env.clock_now[0] = 6000

    async def scenario():
        await _subscription_ending_at(env, 5, 5000)
        report = await env.reconciliation.run_job(EXPIRED_SWEEP)

        async def boom(now):
            raise RuntimeError("db is gone")

        env.reconciliation._jobs[UNPAID_AUDIT] = boom
        with pytest.raises(RuntimeError):
            await env.reconciliation.run_job(UNPAID_AUDIT)
        return report

    report = asyncio.run(scenario())

    assert report.processed == 1
    assert not env.reconciliation.is_running(UNPAID_AUDIT)


def test_unknown_job_name(env):
    with pytest.raises(ValueError):
        asyncio.run(env.reconciliation.run_job("cleanup_everything"))


def test_report_summary():
    assert "пропущено" in JobReport(EXPIRED_SWEEP, skipped=True).summary()
    text = JobReport(EXPIRED_SWEEP, processed=2, errors=["user 5: boom"]).summary()
    assert "обработано 2" in text and "user 5: boom" in text


def test_install_jobs_registers_every_job_once():
    aps = MagicMock()

    async def trigger(name):
        return None

    install_jobs(aps, trigger, poll_minutes=2, audit_minutes=60)

    ids = [c.kwargs["id"] for c in aps.add_job.call_args_list]
    assert sorted(ids) == sorted([
        "expired_sweep", "unpaid_audit", "payments_poll",
        "expiry_reminder_3d", "expiry_reminder_1d", "unsubscribed_reminder",
    ])
    for c in aps.add_job.call_args_list:
        assert c.args[0] is trigger
        assert c.kwargs["args"] == [c.kwargs["id"]]
        assert c.kwargs["max_instances"] == 1
        assert c.kwargs["coalesce"] is True
