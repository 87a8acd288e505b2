# рассылка админа: сессия мастера + отправка с подстановкой даты

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import asdict, dataclass, field
from typing import List, Optional, Tuple

from subgate.db.repository import Repository
from subgate.services.interfaces import Notifier
from subgate.utils.time import format_date_ru

logger = logging.getLogger("subgate.broadcast")

DATE_PLACEHOLDER = "{date}"
NO_DATE = "-"

RECIPIENTS_ALL = "all"
RECIPIENTS_SELECTED = "selected"


@dataclass
class BroadcastSession:
    """
    Состояние мастера рассылки одного админа.
    Хранится в FSM-хранилище aiogram (ключ "broadcast"), не в модуле.
    """
    recipients_type: str = RECIPIENTS_ALL
    recipients: List[int] = field(default_factory=list)
    message: str = ""

    def to_data(self) -> dict:
        return {"broadcast": asdict(self)}

    @classmethod
    def from_data(cls, data: dict) -> Optional["BroadcastSession"]:
        raw = data.get("broadcast")
        return cls(**raw) if raw else None


@dataclass
class BroadcastReport:
    sent: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def summary(self) -> str:
        text = f"✅ Рассылка завершена!\n\n📬 Отправлено: {self.sent}\n❌ Ошибок: {self.failed}"
        if self.errors:
            text += "\n\n⚠️ Ошибки:\n" + "\n".join(self.errors[:5])
            if len(self.errors) > 5:
                text += f"\n...и ещё {len(self.errors) - 5}"
        return text


def personalize(message: str, end_date: Optional[str]) -> str:
    return message.replace(DATE_PLACEHOLDER, end_date or NO_DATE)


class Broadcaster:
    def __init__(
        self,
        repo: Repository,
        notifier: Notifier,
        chat_id: str,
        tz: str = "Europe/Kyiv",
        send_delay: float = 0.1,
    ):
        self.repo = repo
        self.notifier = notifier
        self.chat_id = chat_id
        self.tz = tz
        self.send_delay = send_delay

    async def active_subscriber_ids(self, now: int) -> List[int]:
        subs = await self.repo.list_active_subscriptions(self.chat_id, now)
        return sorted({s.telegram_user_id for s in subs})

    async def resolve_recipients(self, text: str) -> Tuple[List[int], List[str]]:
        """
        "123, @name 456" -> (найденные id, не найденные запросы).
        Числа берём как есть, @username ищем среди сохранённых профилей.
        """
        found: List[int] = []
        not_found: List[str] = []
        for query in re.split(r"[,\s]+", text):
            query = query.strip()
            if not query:
                continue
            clean = query.lstrip("@")
            if clean.lstrip("-").isdigit():
                found.append(int(clean))
                continue
            ids = await self.repo.find_user_ids_by_username(clean)
            if ids:
                found.extend(ids)
            else:
                not_found.append(query)
        return list(dict.fromkeys(found)), not_found

    async def send(self, session: BroadcastSession) -> BroadcastReport:
        report = BroadcastReport()
        for uid in session.recipients:
            sub = await self.repo.get_active_subscription(uid, self.chat_id)
            end_date = format_date_ru(sub.end_at, self.tz) if sub else None
            try:
                await self.notifier.notify(uid, personalize(session.message, end_date), parse_mode="HTML")
            except Exception as e:
                report.failed += 1
                info = await self.repo.get_user_info(uid)
                label = f"@{info.username}" if info and info.username else f"ID:{uid}"
                report.errors.append(f"{label}: {str(e)[:50]}")
                logger.warning("broadcast not delivered user_id=%s: %r", uid, e)
                continue
            report.sent += 1
            if self.send_delay:
                await asyncio.sleep(self.send_delay)

        logger.info("broadcast done: sent=%s failed=%s", report.sent, report.failed)
        return report
