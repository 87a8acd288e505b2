from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

from subgate.services.access import AccessDecision
from subgate.services.reconciliation import ReconciliationScheduler
from subgate.utils.time import Clock, now_ts

logger = logging.getLogger("subgate.dispatcher")


@dataclass(frozen=True)
class MemberJoined:
    user_id: int
    chat_id: str


@dataclass(frozen=True)
class AccessCheckRequested:
    user_id: int


@dataclass(frozen=True)
class JobTriggered:
    job: str


Event = Union[MemberJoined, AccessCheckRequested, JobTriggered]

_STOP = object()


def _consume_exception(fut: asyncio.Future) -> None:
    # результат post() никто не ждёт; ошибка уже залогирована в run()
    if not fut.cancelled():
        fut.exception()


class EventDispatcher:
    """
    Единая очередь событий между "внешним миром" (aiogram, APScheduler)
    и ядром. События пользователей обрабатываются по одному; задачи
    сверки запускаются отдельными тасками, чтобы долгий проход не
    задерживал ответы пользователям (повторный запуск отсекает флаг задачи).
    """

    def __init__(
        self,
        access: AccessDecision,
        reconciliation: ReconciliationScheduler,
        clock: Clock = now_ts,
    ):
        self.access = access
        self.reconciliation = reconciliation
        self.clock = clock
        self._queue: asyncio.Queue = asyncio.Queue()
        self._jobs: set[asyncio.Task] = set()

    def _enqueue(self, event: Any) -> asyncio.Future:
        fut = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((event, fut))
        return fut

    async def submit(self, event: Event) -> Any:
        """Поставить событие в очередь и дождаться результата обработчика."""
        return await self._enqueue(event)

    def post(self, event: Event) -> None:
        """Поставить событие и не ждать."""
        self._enqueue(event).add_done_callback(_consume_exception)

    async def trigger_job(self, name: str) -> None:
        # точка входа для APScheduler
        self.post(JobTriggered(name))

    async def handle(self, event: Event) -> Any:
        now = self.clock()
        if isinstance(event, MemberJoined):
            if str(event.chat_id) != str(self.access.chat_id):
                logger.debug("member joined foreign chat %s, ignore", event.chat_id)
                return False
            return await self.access.on_member_joined(event.user_id, now)
        if isinstance(event, AccessCheckRequested):
            return await self.access.check_access(event.user_id, now)
        if isinstance(event, JobTriggered):
            return await self.reconciliation.run_job(event.job, now)
        raise TypeError(f"unsupported event {event!r}")

    async def _resolve(self, event: Any, fut: asyncio.Future) -> None:
        try:
            result = await self.handle(event)
        except Exception as e:
            logger.exception("event %r failed", event)
            if not fut.done():
                fut.set_exception(e)
        else:
            if not fut.done():
                fut.set_result(result)

    async def run(self) -> None:
        logger.info("event dispatcher started")
        while True:
            event, fut = await self._queue.get()
            try:
                if event is _STOP:
                    fut.set_result(None)
                    break
                if isinstance(event, JobTriggered):
                    task = asyncio.create_task(self._resolve(event, fut))
                    self._jobs.add(task)
                    task.add_done_callback(self._jobs.discard)
                else:
                    await self._resolve(event, fut)
            finally:
                self._queue.task_done()

        if self._jobs:
            await asyncio.gather(*self._jobs, return_exceptions=True)
        logger.info("event dispatcher stopped")

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Дообработать то, что уже в очереди, и остановить run()."""
        await asyncio.wait_for(self._enqueue(_STOP), timeout)
