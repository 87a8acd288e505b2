import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import CHAT, make_env
from subgate.services.access import AccessOutcome
from subgate.services.dispatcher import AccessCheckRequested, EventDispatcher, JobTriggered, MemberJoined
from subgate.services.reconciliation import EXPIRED_SWEEP, JobReport


def _mocked_core():
    access = MagicMock()
    access.chat_id = CHAT
    access.on_member_joined = AsyncMock(return_value=True)
    access.check_access = AsyncMock(return_value="checked")
    reconciliation = MagicMock()
    reconciliation.run_job = AsyncMock(return_value=JobReport(EXPIRED_SWEEP, processed=3))
    return access, reconciliation


def test_events_are_routed_to_core():
    access, reconciliation = _mocked_core()

    async def scenario():
        d = EventDispatcher(access, reconciliation, clock=lambda: 777)
        runner = asyncio.create_task(d.run())
        joined = await d.submit(MemberJoined(5, CHAT))
        checked = await d.submit(AccessCheckRequested(5))
        report = await d.submit(JobTriggered(EXPIRED_SWEEP))
        await d.stop()
        await runner
        return joined, checked, report

    joined, checked, report = asyncio.run(scenario())

    assert joined is True
    assert checked == "checked"
    assert report.processed == 3
    access.on_member_joined.assert_awaited_once_with(5, 777)
    access.check_access.assert_awaited_once_with(5, 777)
    reconciliation.run_job.assert_awaited_once_with(EXPIRED_SWEEP, 777)


def test_member_joined_foreign_chat_is_ignored():
    access, reconciliation = _mocked_core()

    async def scenario():
        d = EventDispatcher(access, reconciliation, clock=lambda: 1)
        runner = asyncio.create_task(d.run())
        result = await d.submit(MemberJoined(5, "-100999"))
        await d.stop()
        await runner
        return result

    assert asyncio.run(scenario()) is False
    access.on_member_joined.assert_not_awaited()


def test_handler_error_reaches_caller_and_consumer_survives():
    access, reconciliation = _mocked_core()
    access.check_access = AsyncMock(side_effect=[RuntimeError("boom"), "second", "third"])

    async def scenario():
        d = EventDispatcher(access, reconciliation, clock=lambda: 1)
        runner = asyncio.create_task(d.run())
        with pytest.raises(RuntimeError):
            await d.submit(AccessCheckRequested(5))
        second = await d.submit(AccessCheckRequested(5))
        d.post(AccessCheckRequested(6))
        await d.stop()
        await runner
        return second

    assert asyncio.run(scenario()) == "second"


def test_long_job_does_not_block_user_events():
    access, reconciliation = _mocked_core()

    async def scenario():
        release = asyncio.Event()

        async def slow_job(name, now):
            await release.wait()
            return JobReport(name, processed=1)

        reconciliation.run_job = AsyncMock(side_effect=slow_job)
        d = EventDispatcher(access, reconciliation, clock=lambda: 1)
        runner = asyncio.create_task(d.run())

        d.post(JobTriggered(EXPIRED_SWEEP))
        checked = await asyncio.wait_for(d.submit(AccessCheckRequested(5)), timeout=1)

        release.set()
        await d.stop()
        await runner
        return checked

    assert asyncio.run(scenario()) == "checked"


def test_end_to_end_access_check_through_queue():
    env = make_env()

    async def scenario():
        d = EventDispatcher(env.access, env.reconciliation, clock=env.clock)
        runner = asyncio.create_task(d.run())
        result = await d.submit(AccessCheckRequested(5))
        await d.stop()
        await runner
        return result

    assert asyncio.run(scenario()).outcome is AccessOutcome.DENIED
